"""
Type definitions for cryptlayout.

This module provides TypedDict definitions and other type aliases
for better type checking throughout the codebase.
"""
from typing import TypedDict


class DiskInfo(TypedDict):
    """Information about a disk device"""
    size_mib: int
    rotational: bool
    model: str
