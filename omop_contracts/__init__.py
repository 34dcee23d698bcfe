"""Message contracts and pipeline integrity for OMOP clinical text pipelines."""

__version__ = "0.1.0"
