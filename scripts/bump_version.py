#!/usr/bin/env python3
"""
Bump the quarry version.

Rewrites the version in pyproject.toml and ``__version__`` in
quarry/__init__.py so the two never drift apart.

Usage:
    python scripts/bump_version.py <new_version>

Example:
    python scripts/bump_version.py 0.2.0
"""

import argparse
import re
import sys
from pathlib import Path

VERSION_FILES = [
    (Path("pyproject.toml"), r'^version\s*=\s*".*?"$', 'version = "{version}"'),
    (Path("quarry/__init__.py"), r'^__version__\s*=\s*".*?"$', '__version__ = "{version}"'),
]


def replace_version(path: Path, pattern: str, template: str, new_version: str) -> None:
    """Rewrite the first line of ``path`` matching ``pattern``; exits on failure."""
    if not path.exists():
        print(f"Error: {path} not found")
        sys.exit(1)

    content = path.read_text()
    if not re.search(pattern, content, re.MULTILINE):
        print(f"Error: Could not find a version line in {path}")
        sys.exit(1)

    updated = re.sub(
        pattern, template.format(version=new_version), content, count=1, flags=re.MULTILINE
    )
    path.write_text(updated)
    print(f"Updated {path} to {new_version}")


def validate_version_format(version: str) -> bool:
    """Versions are plain x.y.z."""
    return bool(re.match(r"^\d+\.\d+\.\d+$", version))


def main():
    parser = argparse.ArgumentParser(description="Bump the quarry version")
    parser.add_argument("version", help="New version number (format: x.y.z)")
    args = parser.parse_args()

    if not validate_version_format(args.version):
        print(f"Error: Invalid version format '{args.version}'. Expected format: x.y.z")
        sys.exit(1)

    for path, pattern, template in VERSION_FILES:
        replace_version(path, pattern, template, args.version)
    print(f"\nVersion bumped to {args.version}")


if __name__ == "__main__":
    main()
