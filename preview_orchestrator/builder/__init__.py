"""Install/build execution and build-failure healing.

Key classes:
    BuildRunner  - Runs the package-manager install and build steps
    BuildHealer  - Writes placeholders for unresolved local imports
"""

from .healer import (
    BuildHealer,
    UnresolvedImport,
    find_unresolved_imports,
    resolve_missing_path,
)
from .runner import BuildRunner

__all__ = [
    "BuildRunner",
    "BuildHealer",
    "UnresolvedImport",
    "find_unresolved_imports",
    "resolve_missing_path",
]
