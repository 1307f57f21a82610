"""docgate: action policies and approval workflows for business documents."""

__version__ = "0.1.0"
