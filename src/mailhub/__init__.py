"""Multi-provider mailbox synchronization and classification engine."""

__version__ = "0.1.0"
