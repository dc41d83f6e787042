from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("ipkutils")
except PackageNotFoundError:
    # Running from a source checkout
    __version__ = "N/A"
