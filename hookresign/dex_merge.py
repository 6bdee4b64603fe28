import copy
import os
import re
import zipfile
from typing import Iterable, Optional

from hookresign.errors import DexMergeFailure
from hookresign.models import LogSink, print_log

PRIMARY_PARTITION = "smali"
PARTITION_RE = re.compile(r"^smali_classes(\d+)$")
DEX_RE = re.compile(r"^classes(\d*)\.dex$")
SIGNATURE_FILE_RE = re.compile(r"^META-INF/[^/]+\.(SF|RSA|DSA|EC)$", re.IGNORECASE)
MANIFEST_ENTRY = "AndroidManifest.xml"


def partition_index(name: str) -> Optional[int]:
    if name == PRIMARY_PARTITION:
        return 1
    match = PARTITION_RE.match(name)
    return int(match.group(1)) if match else None


def partition_dex_name(partition: str) -> str:
    index = partition_index(partition)
    if index is None:
        raise DexMergeFailure(f"Not a smali partition directory: {partition}")
    return "classes.dex" if index == 1 else f"classes{index}.dex"


def select_helper_partition(decoded_dir: str) -> str:
    """Next partition after the highest numbered one, to stay clear of the 64K method ceiling."""
    entries = [
        entry for entry in os.listdir(decoded_dir) if os.path.isdir(os.path.join(decoded_dir, entry))
    ]
    numbered = [int(m.group(1)) for m in (PARTITION_RE.match(entry) for entry in entries) if m]
    if numbered:
        return f"smali_classes{max(numbered) + 1}"
    if PRIMARY_PARTITION in entries:
        return "smali_classes2"
    return PRIMARY_PARTITION


def partition_of(decoded_dir: str, path: str) -> str:
    relative = os.path.relpath(path, decoded_dir)
    top = relative.split(os.sep, 1)[0]
    if partition_index(top) is None:
        raise DexMergeFailure(f"{path} is not inside a smali partition of {decoded_dir}")
    return top


def is_signature_entry(name: str) -> bool:
    return name == "META-INF/MANIFEST.MF" or bool(SIGNATURE_FILE_RE.match(name))


def merge_into_original(
    original_apk: str,
    rebuilt_apk: str,
    output_apk: str,
    partitions: Iterable[str],
    manifest_bytes: Optional[bytes] = None,
    manifest_from_rebuild: bool = False,
    on_log: LogSink = print_log,
) -> list[str]:
    """Copy the original container, swapping in only the regenerated pieces.

    Every original entry keeps its compression type, timestamp and position;
    resources are never taken from the rebuilt container. Returns the names of
    the replaced or added entries.
    """
    replacements: dict[str, bytes] = {}
    try:
        with zipfile.ZipFile(rebuilt_apk, "r") as rebuilt:
            names = set(rebuilt.namelist())
            for partition in sorted(set(partitions)):
                dex_name = partition_dex_name(partition)
                if dex_name not in names:
                    raise DexMergeFailure(f"Rebuilt APK is missing {dex_name} (from {partition})")
                replacements[dex_name] = rebuilt.read(dex_name)
            if manifest_from_rebuild:
                if MANIFEST_ENTRY not in names:
                    raise DexMergeFailure("Rebuilt APK is missing AndroidManifest.xml")
                replacements[MANIFEST_ENTRY] = rebuilt.read(MANIFEST_ENTRY)
    except zipfile.BadZipFile as e:
        raise DexMergeFailure(f"Rebuilt APK is not a valid zip: {e}") from e

    if manifest_bytes is not None:
        replacements[MANIFEST_ENTRY] = manifest_bytes

    written: list[str] = []
    try:
        with zipfile.ZipFile(original_apk, "r") as source, zipfile.ZipFile(output_apk, "w") as target:
            for info in source.infolist():
                if is_signature_entry(info.filename):
                    continue
                data = replacements.pop(info.filename, None)
                if data is None:
                    target.writestr(copy.copy(info), source.read(info.filename))
                    continue
                target.writestr(copy.copy(info), data)
                written.append(info.filename)
                on_log(f"Replaced {info.filename} ({len(data)} bytes)")

            for name in sorted(replacements, key=dex_sort_key):
                added = zipfile.ZipInfo(name, date_time=(1981, 1, 1, 0, 0, 0))
                added.compress_type = zipfile.ZIP_DEFLATED
                target.writestr(added, replacements[name])
                written.append(name)
                on_log(f"Added {name} ({len(replacements[name])} bytes)")
    except (zipfile.BadZipFile, OSError) as e:
        if os.path.exists(output_apk):
            os.remove(output_apk)
        raise DexMergeFailure(f"Merging into original APK failed: {e}") from e

    return written


def dex_sort_key(name: str) -> tuple[int, str]:
    match = DEX_RE.match(name)
    if not match:
        return (0, name)
    return (int(match.group(1) or 1), name)
