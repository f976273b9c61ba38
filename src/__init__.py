from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("rust-rcon-console")
except PackageNotFoundError:
    # Package not installed, fallback for development
    __version__ = "dev"
