"""
Version information helper.
"""

from importlib import metadata


def get_version():
    # VERSION file wins (container builds ship one next to the app)
    try:
        with open('VERSION', 'r') as f:
            return f.read().strip()
    except FileNotFoundError:
        pass

    # Installed distribution metadata (pip install -e . in development)
    try:
        return metadata.version('chunkscribe')
    except metadata.PackageNotFoundError:
        pass

    return "unknown"
