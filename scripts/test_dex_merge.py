import os
import tempfile
import unittest
import zipfile

from hookresign import dex_merge
from hookresign.errors import DexMergeFailure


class PartitionTests(unittest.TestCase):
    def _decoded(self, *partitions: str) -> str:
        temp_dir = tempfile.mkdtemp()
        for partition in partitions:
            os.makedirs(os.path.join(temp_dir, partition))
        return temp_dir

    def test_select_helper_partition_uses_next_after_highest(self):
        decoded = self._decoded("smali", "smali_classes2", "smali_classes5", "res", "original")
        self.assertEqual(dex_merge.select_helper_partition(decoded), "smali_classes6")

    def test_select_helper_partition_with_only_primary(self):
        self.assertEqual(dex_merge.select_helper_partition(self._decoded("smali")), "smali_classes2")

    def test_select_helper_partition_with_no_partitions(self):
        self.assertEqual(dex_merge.select_helper_partition(self._decoded("res")), "smali")

    def test_partition_dex_names(self):
        self.assertEqual(dex_merge.partition_dex_name("smali"), "classes.dex")
        self.assertEqual(dex_merge.partition_dex_name("smali_classes12"), "classes12.dex")
        with self.assertRaises(DexMergeFailure):
            dex_merge.partition_dex_name("res")

    def test_partition_of(self):
        decoded = self._decoded("smali_classes3")
        path = os.path.join(decoded, "smali_classes3", "com", "x", "A.smali")
        self.assertEqual(dex_merge.partition_of(decoded, path), "smali_classes3")
        with self.assertRaises(DexMergeFailure):
            dex_merge.partition_of(decoded, os.path.join(decoded, "res", "values", "strings.xml"))

    def test_is_signature_entry(self):
        for name in ("META-INF/MANIFEST.MF", "META-INF/CERT.SF", "META-INF/CERT.RSA", "META-INF/KEY.ec"):
            self.assertTrue(dex_merge.is_signature_entry(name), name)
        for name in ("META-INF/services/x.y", "META-INF/androidx.core_core.version", "classes.dex"):
            self.assertFalse(dex_merge.is_signature_entry(name), name)


class MergeIntoOriginalTests(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.addCleanup(self.temp_dir.cleanup)
        self.original = self._zip(
            "original.apk",
            [
                ("AndroidManifest.xml", b"original-manifest", zipfile.ZIP_DEFLATED),
                ("classes.dex", b"original-dex-1", zipfile.ZIP_DEFLATED),
                ("classes2.dex", b"original-dex-2", zipfile.ZIP_DEFLATED),
                ("resources.arsc", b"arsc", zipfile.ZIP_STORED),
                ("res/raw/song.ogg", b"ogg", zipfile.ZIP_STORED),
                ("META-INF/MANIFEST.MF", b"mf", zipfile.ZIP_DEFLATED),
                ("META-INF/CERT.SF", b"sf", zipfile.ZIP_DEFLATED),
                ("META-INF/CERT.RSA", b"rsa", zipfile.ZIP_DEFLATED),
                ("META-INF/services/com.x.Service", b"impl", zipfile.ZIP_DEFLATED),
            ],
        )
        self.rebuilt = self._zip(
            "rebuilt.apk",
            [
                ("AndroidManifest.xml", b"rebuilt-manifest", zipfile.ZIP_DEFLATED),
                ("classes.dex", b"rebuilt-dex-1", zipfile.ZIP_DEFLATED),
                ("classes2.dex", b"rebuilt-dex-2", zipfile.ZIP_DEFLATED),
                ("classes3.dex", b"helper-dex", zipfile.ZIP_DEFLATED),
                ("resources.arsc", b"rebuilt-arsc", zipfile.ZIP_DEFLATED),
            ],
        )
        self.output = os.path.join(self.temp_dir.name, "merged.apk")

    def _zip(self, name, entries):
        path = os.path.join(self.temp_dir.name, name)
        with zipfile.ZipFile(path, "w") as zf:
            for entry, data, compress_type in entries:
                info = zipfile.ZipInfo(entry, date_time=(2020, 5, 17, 12, 30, 0))
                info.compress_type = compress_type
                zf.writestr(info, data)
        return path

    def test_merge_replaces_only_touched_partitions(self):
        written = dex_merge.merge_into_original(
            self.original, self.rebuilt, self.output, ["smali", "smali_classes3"], on_log=lambda _: None
        )

        self.assertEqual(written, ["classes.dex", "classes3.dex"])
        with zipfile.ZipFile(self.output) as zf:
            self.assertEqual(zf.read("classes.dex"), b"rebuilt-dex-1")
            self.assertEqual(zf.read("classes2.dex"), b"original-dex-2")
            self.assertEqual(zf.read("classes3.dex"), b"helper-dex")
            self.assertEqual(zf.read("resources.arsc"), b"arsc")
            self.assertEqual(zf.read("AndroidManifest.xml"), b"original-manifest")

    def test_merge_preserves_compression_and_timestamps(self):
        dex_merge.merge_into_original(self.original, self.rebuilt, self.output, ["smali"], on_log=lambda _: None)

        with zipfile.ZipFile(self.output) as zf:
            self.assertEqual(zf.getinfo("resources.arsc").compress_type, zipfile.ZIP_STORED)
            self.assertEqual(zf.getinfo("res/raw/song.ogg").compress_type, zipfile.ZIP_STORED)
            self.assertEqual(zf.getinfo("classes.dex").compress_type, zipfile.ZIP_DEFLATED)
            self.assertEqual(zf.getinfo("res/raw/song.ogg").date_time, (2020, 5, 17, 12, 30, 0))

    def test_merge_drops_old_signature_files_only(self):
        dex_merge.merge_into_original(self.original, self.rebuilt, self.output, ["smali"], on_log=lambda _: None)

        with zipfile.ZipFile(self.output) as zf:
            names = zf.namelist()
        self.assertNotIn("META-INF/MANIFEST.MF", names)
        self.assertNotIn("META-INF/CERT.SF", names)
        self.assertNotIn("META-INF/CERT.RSA", names)
        self.assertIn("META-INF/services/com.x.Service", names)

        with zipfile.ZipFile(self.original) as zf:
            original_content = {n for n in zf.namelist() if not n.startswith("META-INF/")}
        self.assertEqual({n for n in names if not n.startswith("META-INF/")}, original_content)

    def test_merge_swaps_manifest(self):
        dex_merge.merge_into_original(
            self.original, self.rebuilt, self.output, ["smali"], manifest_bytes=b"edited", on_log=lambda _: None
        )
        with zipfile.ZipFile(self.output) as zf:
            self.assertEqual(zf.read("AndroidManifest.xml"), b"edited")

        dex_merge.merge_into_original(
            self.original, self.rebuilt, self.output, ["smali"], manifest_from_rebuild=True, on_log=lambda _: None
        )
        with zipfile.ZipFile(self.output) as zf:
            self.assertEqual(zf.read("AndroidManifest.xml"), b"rebuilt-manifest")

    def test_merge_fails_when_partition_missing_from_rebuild(self):
        with self.assertRaises(DexMergeFailure):
            dex_merge.merge_into_original(
                self.original, self.rebuilt, self.output, ["smali_classes7"], on_log=lambda _: None
            )
        self.assertFalse(os.path.exists(self.output))


if __name__ == "__main__":
    unittest.main()
