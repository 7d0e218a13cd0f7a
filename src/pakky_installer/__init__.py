from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version('pakky-installer')
except PackageNotFoundError:  # pragma: no cover
    __version__ = 'unknown'
