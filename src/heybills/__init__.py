"""
Hey Bills document intelligence package.

The package turns photographed receipts into structured records through an OCR pipeline and
answers questions about a user's spending history with a retrieval-augmented chat engine.
"""

__all__ = ["__version__"]

__version__ = "0.1.0"
