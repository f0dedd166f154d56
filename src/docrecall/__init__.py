"""DocRecall - chunk, embed and retrieve document pages."""

__version__ = "0.1.0"
