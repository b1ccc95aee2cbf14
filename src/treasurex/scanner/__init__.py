"""Contract risk scanning: data sources, sub-analyses and scoring."""
