"""
arcquery - hierarchical query engine of a medical image archive.

Answers find requests over Patient, Study, Series and Instance with composed
attribute sets and cached per-study and per-series aggregates.
"""

from loguru import logger

__version__ = "0.1.0"

# Enabled by arcquery.utils.logger.setup_logging
logger.disable("arcquery")
