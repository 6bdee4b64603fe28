import os
import tempfile
import unittest
import zipfile
from unittest import mock

from hookresign import signing
from hookresign.errors import SigningFailure, ToolFailure, ToolNotFound, VerificationFailure
from hookresign.models import ResignOptions, Stage

KEYTOOL_OUTPUT = """Keystore type: PKCS12
Keystore provider: SUN

Your keystore contains 2 entries

Alias name: release
Creation date: Jan 1, 2024
Entry type: PrivateKeyEntry
*******************************************

别名: 中文别名
创建日期: 2024-1-1
"""

VERIFY_OUTPUT = """Verifies
Verified using v1 scheme (JAR signing): true
Verified using v2 scheme (APK Signature Scheme v2): true
Verified using v3 scheme (APK Signature Scheme v3): false
Verified using v4 scheme (APK Signature Scheme v4): false
Number of signers: 1
Signer #1 certificate DN: CN=Release, O=Example
Signer #1 certificate SHA-256 digest: AB12CD
Signer #1 certificate SHA-1 digest: 0f0f
Signer #1 certificate MD5 digest: 99aa
"""

BADGING_OUTPUT = """package: name='com.example.demo' versionCode='42' versionName='1.4.2' platformBuildVersionName='14'
sdkVersion:'21'
application-label:'Demo'
"""


def quiet(_):
    pass


class KeystoreTests(unittest.TestCase):
    def test_parse_keystore_aliases_accepts_both_locales(self):
        self.assertEqual(signing.parse_keystore_aliases(KEYTOOL_OUTPUT), ["release", "中文别名"])

    def test_get_keystore_aliases_wraps_tool_failure(self):
        with mock.patch("hookresign.signing.find_keytool_cmd", return_value="keytool"), mock.patch(
            "hookresign.signing.run_logged_command",
            side_effect=ToolFailure("keytool failed", output="password was incorrect"),
        ):
            with self.assertRaises(SigningFailure) as ctx:
                signing.get_keystore_aliases("ks.jks", "bad", quiet)

        self.assertIn("password was incorrect", str(ctx.exception))


class AnalyzeTests(unittest.TestCase):
    def test_analyze_apk_parses_badging(self):
        with mock.patch("hookresign.signing.find_android_build_tool", return_value="aapt"), mock.patch(
            "hookresign.signing.run_logged_command", return_value=BADGING_OUTPUT
        ):
            summary = signing.analyze_apk("app.apk", quiet)

        self.assertEqual(
            summary,
            {"package_name": "com.example.demo", "version_code": "42", "version_name": "1.4.2", "label": "Demo"},
        )

    def test_analyze_apk_without_aapt_returns_empty_summary(self):
        with mock.patch("hookresign.signing.find_android_build_tool", return_value=None):
            summary = signing.analyze_apk("app.apk", quiet)

        self.assertEqual(summary["package_name"], "")

    def test_parse_signature_report(self):
        report = signing.parse_signature_report(VERIFY_OUTPUT)

        self.assertTrue(report.v1)
        self.assertTrue(report.v2)
        self.assertFalse(report.v3)
        self.assertEqual(report.verified_schemes, ["v1", "v2"])
        self.assertEqual(report.signer_dn, "CN=Release, O=Example")
        self.assertEqual(report.sha256, "ab12cd")
        self.assertEqual(report.sha1, "0f0f")
        self.assertEqual(report.md5, "99aa")

    def test_analyze_apk_signature_raises_on_failed_verify(self):
        with mock.patch("hookresign.signing.find_android_build_tool", return_value="apksigner"), mock.patch(
            "hookresign.signing.run_logged_command", side_effect=ToolFailure("failed", output="DOES NOT VERIFY")
        ):
            with self.assertRaises(VerificationFailure):
                signing.analyze_apk_signature("app.apk", quiet)


class SignApkTests(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.addCleanup(self.temp_dir.cleanup)
        self.keystore = os.path.join(self.temp_dir.name, "release.jks")
        self.input_apk = os.path.join(self.temp_dir.name, "in.apk")
        for path in (self.keystore, self.input_apk):
            with open(path, "wb") as f:
                f.write(b"data")
        self.output_apk = os.path.join(self.temp_dir.name, "out.apk")

    def test_missing_keystore_fails_before_any_tool(self):
        with mock.patch("hookresign.signing.run_logged_command") as run:
            with self.assertRaises(SigningFailure):
                signing.sign_apk(self.input_apk, self.output_apk, "/nope.jks", "p", "p", "release", quiet)
        run.assert_not_called()

    def test_unknown_alias_fails(self):
        with mock.patch("hookresign.signing.get_keystore_aliases", return_value=["other"]):
            with self.assertRaises(SigningFailure) as ctx:
                signing.sign_apk(self.input_apk, self.output_apk, self.keystore, "p", "p", "release", quiet)

        self.assertIn("other", str(ctx.exception))

    def test_apksigner_command_enables_all_schemes(self):
        def fake_run(command, action, on_log, timeout=None, **kwargs):
            with open(self.output_apk, "wb") as f:
                f.write(b"signed")
            return ""

        with mock.patch("hookresign.signing.get_keystore_aliases", side_effect=ToolNotFound("no keytool")), mock.patch(
            "hookresign.signing.find_android_build_tool", return_value="apksigner"
        ), mock.patch("hookresign.signing.run_logged_command", side_effect=fake_run) as run:
            signing.sign_apk(self.input_apk, self.output_apk, self.keystore, "sp", "kp", "release", quiet)

        command = run.call_args.args[0]
        self.assertEqual(command[:2], ["apksigner", "sign"])
        self.assertIn("pass:sp", command)
        self.assertIn("pass:kp", command)
        for flag in ("--v1-signing-enabled", "--v2-signing-enabled", "--v3-signing-enabled"):
            self.assertEqual(command[command.index(flag) + 1], "true")
        self.assertEqual(command[-1], self.input_apk)

    def test_jarsigner_fallback(self):
        with mock.patch("hookresign.signing.get_keystore_aliases", return_value=["release"]), mock.patch(
            "hookresign.signing.find_android_build_tool", return_value=None
        ), mock.patch("hookresign.signing.find_jarsigner_cmd", return_value="jarsigner"), mock.patch(
            "hookresign.signing.run_logged_command", return_value=""
        ) as run:
            signing.sign_apk(self.input_apk, self.output_apk, self.keystore, "sp", "kp", "release", quiet)

        command = run.call_args.args[0]
        self.assertEqual(command[0], "jarsigner")
        self.assertEqual(command[-2:], [self.output_apk, "release"])
        self.assertTrue(os.path.exists(self.output_apk))

    def test_zipalign_missing_copies_input(self):
        with mock.patch("hookresign.signing.find_android_build_tool", return_value=None):
            aligned = signing.zipalign_apk(self.input_apk, self.output_apk, quiet)

        self.assertFalse(aligned)
        with open(self.output_apk, "rb") as f:
            self.assertEqual(f.read(), b"data")

    def test_resign_apk_writes_signed_suffix(self):
        def fake_sign(input_apk, output_apk, *args, **kwargs):
            with open(output_apk, "wb") as f:
                f.write(b"signed")

        with mock.patch("hookresign.signing.sign_apk", side_effect=fake_sign):
            result = signing.resign_apk(
                self.input_apk, self.keystore, "sp", "kp", "release", quiet, ResignOptions(verify=False)
            )

        self.assertTrue(result.success)
        self.assertEqual(result.output_path, os.path.join(self.temp_dir.name, "in_signed.apk"))
        self.assertTrue(os.path.exists(result.output_path))

    def test_resign_apk_keeps_entries_outside_meta_inf(self):
        entries = {
            "AndroidManifest.xml": b"\x03\x00manifest",
            "classes.dex": b"dex1",
            "classes2.dex": b"dex2",
            "resources.arsc": b"arsc",
            "res/drawable/icon.png": b"png",
            "META-INF/OLD.RSA": b"old",
        }
        with zipfile.ZipFile(self.input_apk, "w") as zf:
            for name, content in entries.items():
                zf.writestr(name, content)

        def fake_sign(input_apk, output_apk, *args, **kwargs):
            with zipfile.ZipFile(input_apk) as src, zipfile.ZipFile(output_apk, "w") as dst:
                for item in src.infolist():
                    if not item.filename.startswith("META-INF/"):
                        dst.writestr(item, src.read(item.filename))
                dst.writestr("META-INF/MANIFEST.MF", b"Manifest-Version: 1.0\n")
                dst.writestr("META-INF/RELEASE.RSA", b"new")

        with mock.patch("hookresign.signing.sign_apk", side_effect=fake_sign):
            result = signing.resign_apk(
                self.input_apk, self.keystore, "sp", "kp", "release", quiet, ResignOptions(verify=False)
            )

        self.assertTrue(result.success, result.message)
        with zipfile.ZipFile(self.input_apk) as original, zipfile.ZipFile(result.output_path) as signed:
            original_names = {n for n in original.namelist() if not n.startswith("META-INF/")}
            signed_names = {n for n in signed.namelist() if not n.startswith("META-INF/")}
            self.assertEqual(signed_names, original_names)
            for name in original_names:
                self.assertEqual(signed.read(name), original.read(name), name)
            self.assertNotIn("classes3.dex", signed.namelist())

    def test_resign_apk_reports_signing_stage(self):
        result = signing.resign_apk(self.input_apk, "/nope.jks", "sp", "kp", "release", quiet)

        self.assertFalse(result.success)
        self.assertEqual(result.stage, Stage.SIGNING)
        self.assertTrue(result.message.startswith("Failed at Signing: SigningFailure"))
        self.assertFalse(os.path.exists(os.path.join(self.temp_dir.name, "in_signed.apk")))


if __name__ == "__main__":
    unittest.main()
