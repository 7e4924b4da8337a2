"""cytube-bot — CyTube chat bot with a coin flip economy."""
from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("cytube-bot")
except PackageNotFoundError:
    __version__ = "0.0.0"
