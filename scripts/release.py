#!/usr/bin/env python3
"""Cut an imagstore release.

    python scripts/release.py            # next minor, e.g. 0.1.0 -> 0.2.0
    python scripts/release.py 0.1.1      # explicit version
    python scripts/release.py --dry-run  # only show what would happen

The version is recorded twice: pyproject.toml for packaging and
src/imagstore/version.py, which new entries write into imag.version. Both
change together; the test suite must pass before anything is committed.
"""

from __future__ import annotations

import argparse
import re
import subprocess
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
VERSION_FILES = {
    ROOT / "pyproject.toml": re.compile(r'^(version\s*=\s*)"([^"]+)"', re.MULTILINE),
    ROOT / "src" / "imagstore" / "version.py": re.compile(r'^(__version__\s*=\s*)"([^"]+)"', re.MULTILINE),
}


def sh(*cmd: str, dry: bool = False, quiet: bool = True) -> str:
    print(f"  {'(skipped) ' if dry else ''}{' '.join(cmd)}")
    if dry:
        return ""
    return subprocess.run(cmd, cwd=ROOT, check=True, capture_output=quiet, text=True).stdout or ""


def read_versions() -> set[str]:
    found = set()
    for path, pattern in VERSION_FILES.items():
        m = pattern.search(path.read_text())
        if m is None:
            sys.exit(f"no version string in {path.relative_to(ROOT)}")
        found.add(m.group(2))
    return found


def write_versions(new: str) -> None:
    for path, pattern in VERSION_FILES.items():
        path.write_text(pattern.sub(rf'\g<1>"{new}"', path.read_text(), count=1))


def bump_minor(ver: str) -> str:
    major, minor, *_ = ver.split(".")
    return f"{major}.{int(minor) + 1}.0"


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("version", nargs="?", help="version to release (default: next minor)")
    parser.add_argument("--dry-run", action="store_true", help="print the steps without running them")
    args = parser.parse_args()
    dry = args.dry_run

    versions = read_versions()
    if len(versions) != 1:
        sys.exit(f"version files disagree: {', '.join(sorted(versions))}")
    (old,) = versions
    new = args.version.lstrip("v") if args.version else bump_minor(old)
    tag = f"v{new}"

    print(f"imagstore {old} -> {new}{' [dry run]' if dry else ''}")
    if new != old:
        print("  stores with strict-version on will refuse entries written by older releases")

    if not dry and sh("git", "status", "--porcelain").strip():
        sys.exit("uncommitted changes in the tree; release from a clean checkout")

    print("version files:")
    for path in VERSION_FILES:
        print(f"  {path.relative_to(ROOT)}")
    if not dry:
        write_versions(new)

    print("tests:")
    sh(sys.executable, "-m", "pytest", "-q", dry=dry, quiet=False)

    print("git:")
    sh("git", "add", *(str(p.relative_to(ROOT)) for p in VERSION_FILES), dry=dry)
    sh("git", "commit", "-m", f"Release {new}", dry=dry)
    sh("git", "tag", "-a", tag, "-m", f"imagstore {new}", dry=dry)
    sh("git", "push", "--follow-tags", dry=dry)

    print(f"released {tag}" if not dry else f"would release {tag}")


if __name__ == "__main__":
    main()
