"""
Utility functions package.
"""

from .json_parser import (
    auto_close_json,
    safe_json_loads,
    extract_json_object
)

__all__ = [
    'auto_close_json',
    'safe_json_loads',
    'extract_json_object',
]
