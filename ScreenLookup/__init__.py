from importlib import metadata

PACKAGE_NAME = "ScreenLookup"


def get_current_version():
    try:
        return metadata.version(PACKAGE_NAME)
    except metadata.PackageNotFoundError:
        return "1.0.0"


__version__ = get_current_version()
