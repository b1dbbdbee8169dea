from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("cog-battery")
except PackageNotFoundError:
    __version__ = "unknown"
