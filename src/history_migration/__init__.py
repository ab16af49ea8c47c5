"""History Bridge - Migrate process-engine history into a target store."""

import logging
import warnings

__version__ = "0.1.0"
__author__ = "History Migration Team"
__license__ = "Apache-2.0"

# Suppress verbose third-party library logging
logging.getLogger("sqlalchemy").setLevel(logging.WARNING)
logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
logging.getLogger("sqlalchemy.pool").setLevel(logging.WARNING)

warnings.filterwarnings("ignore", category=DeprecationWarning, module="sqlalchemy")
