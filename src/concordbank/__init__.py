"""ConcordBank - Rapprochement automatique entre relevés bancaires et écritures comptables."""

__version__ = "0.1.0"

from concordbank.config import ConcordBankError, ConfigError, ConfigFileError  # noqa: E402
from concordbank.io_tables import TableFileError  # noqa: E402

__all__ = [
    "__version__",
    "ConcordBankError",
    "ConfigError",
    "ConfigFileError",
    "TableFileError",
]
