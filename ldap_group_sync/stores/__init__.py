"""Local group stores the directory groups are reconciled against."""
