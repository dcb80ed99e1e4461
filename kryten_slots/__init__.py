"""kryten-slots — Chat slot machine and player economy microservice."""
from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("kryten-slots")
except PackageNotFoundError:
    __version__ = "0.0.0"
