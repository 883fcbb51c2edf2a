from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("procura")
except PackageNotFoundError:
    # Package is not installed (e.g. during local development)
    __version__ = "0.4.0-local"

__all__ = [
    "__version__",
]
