"""Service control policy materialization, attachment and quarantine."""
