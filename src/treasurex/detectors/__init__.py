"""Pattern detectors loaded by the ModuleRegistry."""
