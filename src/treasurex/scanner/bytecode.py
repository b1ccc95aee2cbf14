"""
Bytecode / program risk classifiers.

A classifier inspects the `program` record of a mint and returns the risk
pattern names it finds. Classifiers are pluggable; the scorer runs every
configured classifier and unions their findings.
"""

from typing import Any, Iterable, Mapping, Protocol

from treasurex.scanner.chain_source import STANDARD_TOKEN_PROGRAMS

TRANSFER_DISABLED_SIG = "TRANSFER_DISABLED_SIG"
SELL_DISABLED_SIG = "SELL_DISABLED_SIG"
BLACKLIST_SIG = "BLACKLIST_SIG"
TAX_MANIPULATION_SIG = "TAX_MANIPULATION_SIG"
NON_STANDARD_PROGRAM = "NON_STANDARD_PROGRAM"

HONEYPOT_SIGNATURES = frozenset(
    {TRANSFER_DISABLED_SIG, SELL_DISABLED_SIG, BLACKLIST_SIG, TAX_MANIPULATION_SIG}
)

# Token-2022 extensions that let the issuer block or tax holders.
DEFAULT_EXTENSION_SIGNATURES: dict[str, str] = {
    "nonTransferable": TRANSFER_DISABLED_SIG,
    "transferHook": SELL_DISABLED_SIG,
    "permanentDelegate": BLACKLIST_SIG,
    "defaultAccountState": BLACKLIST_SIG,
}


class BytecodeClassifier(Protocol):
    name: str

    def classify(self, program: Mapping[str, Any]) -> list[str]:
        ...


class ProgramOwnerClassifier:
    """Flags mints owned by anything other than the SPL Token programs."""

    name = "program_owner"

    def __init__(self, standard_programs: Iterable[str] = STANDARD_TOKEN_PROGRAMS):
        self.standard_programs = frozenset(standard_programs)

    def classify(self, program: Mapping[str, Any]) -> list[str]:
        if program.get("owner_program") in self.standard_programs:
            return []
        return [NON_STANDARD_PROGRAM]


class SignatureClassifier:
    """
    Maps known extension markers to honeypot signatures, and flags a transfer
    fee above `max_transfer_fee_bps` as tax manipulation.
    """

    name = "signature"

    def __init__(
        self,
        signatures: Mapping[str, str] = DEFAULT_EXTENSION_SIGNATURES,
        max_transfer_fee_bps: float = 1000.0,
    ):
        self.signatures = dict(signatures)
        self.max_transfer_fee_bps = max_transfer_fee_bps

    def classify(self, program: Mapping[str, Any]) -> list[str]:
        found = {self.signatures[ext] for ext in program.get("extensions") or () if ext in self.signatures}
        if float(program.get("transfer_fee_bps") or 0.0) > self.max_transfer_fee_bps:
            found.add(TAX_MANIPULATION_SIG)
        return sorted(found)


def default_classifiers() -> list[BytecodeClassifier]:
    return [ProgramOwnerClassifier(), SignatureClassifier()]
