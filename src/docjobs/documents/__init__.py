"""Collection of generated output files and reconciliation into the document store."""
