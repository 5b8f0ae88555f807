"""modelhub -- one interface over many language model backends."""

__version__ = "0.1.0"
