"""ITSM Core - change request approval workflow."""

__version__ = "1.0.0"
