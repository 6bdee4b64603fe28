#!/usr/bin/env python3
from __future__ import annotations

import argparse
import re
import sys
import zipfile
from pathlib import Path

SIGNING_METADATA_PREFIX = "META-INF/"
ROOT_DEX_RE = re.compile(r"^classes(\d*)\.dex$")


def collect_apk_layout(apk_path: Path) -> tuple[set[str], list[str]]:
    with zipfile.ZipFile(apk_path) as zf:
        names = zf.namelist()

    content_entries = {name for name in names if not name.startswith(SIGNING_METADATA_PREFIX)}
    root_dex_entries = sorted(
        (name for name in names if ROOT_DEX_RE.match(name)),
        key=lambda name: int(ROOT_DEX_RE.match(name).group(1) or 1),
    )
    return content_entries, root_dex_entries


def validate_resigned_apk(
    original_apk: Path,
    resigned_apk: Path,
    expect_helper_dex: bool = True,
) -> list[str]:
    original_entries, original_dex = collect_apk_layout(original_apk)
    resigned_entries, resigned_dex = collect_apk_layout(resigned_apk)
    errors: list[str] = []

    for entry in sorted(original_entries - resigned_entries):
        errors.append(f"Entry dropped from resigned APK: {entry}")

    added = sorted(resigned_entries - original_entries)
    unexpected = [name for name in added if not ROOT_DEX_RE.match(name)]
    for entry in unexpected:
        errors.append(f"Unexpected entry added to resigned APK: {entry}")

    new_dex = [name for name in added if ROOT_DEX_RE.match(name)]
    if expect_helper_dex:
        if len(new_dex) != 1:
            errors.append(
                f"Expected exactly one helper dex to be added, found {len(new_dex)} (found: {new_dex})"
            )
        elif resigned_dex[-1] != new_dex[0]:
            errors.append(f"Helper dex {new_dex[0]} is not the highest partition (found: {resigned_dex})")
    elif new_dex:
        errors.append(f"Dex entries added to plain resigned APK: {new_dex}")

    if len(resigned_dex) < len(original_dex):
        errors.append(f"classes*.dex count shrank: {len(resigned_dex)} < {len(original_dex)}")

    return errors


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description=(
            "Compare a resigned APK against its input: every entry outside META-INF "
            "must survive, and the injected helper dex must be the highest partition."
        )
    )
    parser.add_argument("--original", required=True, help="Path to the input APK")
    parser.add_argument("--apk", required=True, help="Path to the resigned APK")
    parser.add_argument(
        "--plain",
        action="store_true",
        help="The APK was resigned without instrumentation; no dex may be added",
    )
    return parser


def main() -> int:
    parser = build_arg_parser()
    args = parser.parse_args()

    original_path = Path(args.original)
    apk_path = Path(args.apk)
    for path in (original_path, apk_path):
        if not path.exists():
            parser.error(f"APK does not exist: {path}")

    errors = validate_resigned_apk(original_path, apk_path, expect_helper_dex=not args.plain)
    if errors:
        for error in errors:
            print(f"[FAIL] {error}", file=sys.stderr)
        return 1

    print(f"[OK] Resigned APK layout check passed: {apk_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
