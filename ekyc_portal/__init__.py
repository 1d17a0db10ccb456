"""EKYC portal: session, submission and review services over an async SQL backend."""

__version__ = "0.1.0"
