"""phaseledger - feature ledger and phase-gate engine."""

# No imports at package level to avoid circular import issues
# Import modules directly where needed

__all__ = [
    "errors",
    "history",
    "ledger",
    "metrics",
    "models",
    "repair",
    "transitions",
    "validators",
    "workflow",
    "workspace",
]

__version__ = "0.3.0"
