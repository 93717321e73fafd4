# Luminum endpoint enrollment

from luminum.client.client import LuminumClient
from luminum.common.config import Config
from luminum.server.core import EnrollmentServer

__version__ = Config.VERSION

__all__ = [
    "EnrollmentServer",
    "LuminumClient",
    "__version__",
]
