import os
import shutil
import tempfile
from typing import Optional

from hookresign.dex_merge import merge_into_original, partition_of, select_helper_partition
from hookresign.errors import ManifestParseFailure, ResignError, ToolFailure, VerificationFailure
from hookresign.manifest import ManifestEdit, ManifestInfo, apply_application_override, load_manifest
from hookresign.models import (
    ApkArtifact,
    InjectionPlan,
    LogSink,
    ResignOptions,
    ResignResult,
    Stage,
    Strategy,
    print_log,
)
from hookresign.planner import plan_injection
from hookresign.signature import extract_certificate
from hookresign.signing import (
    analyze_apk,
    analyze_apk_signature,
    sign_apk,
    signed_output_path,
    zipalign_apk,
)
from hookresign.smali import (
    index_smali_classes,
    inject_into_smali,
    write_helper_classes,
    write_synthetic_application,
)
from hookresign.toolchain import (
    ensure_apktool_cmd,
    find_manifest_editor_cmd,
    resolve_tool_timeout,
    run_logged_command,
)

HOOKED_SUFFIX = "_hooked_signed"


class ResignJob:
    """One inject-and-resign run. Owns its working directory for its whole lifetime."""

    def __init__(self, apk_path: str, on_log: LogSink, options: ResignOptions):
        self.apk_path = apk_path
        self.on_log = on_log
        self.options = options
        self.timeout = None
        self.stage = Stage.INIT
        self.resources_decoded = False

    def enter(self, stage: Stage) -> None:
        self.stage = stage
        self.on_log(f"[{stage.value.lower()}] {stage.value}...")

    def decompile(self, apktool: list[str], decoded_dir: str, full: bool = False) -> None:
        if full:
            try:
                run_logged_command(
                    apktool + ["d", "-f", "-o", decoded_dir, self.apk_path],
                    "apktool decode",
                    self.on_log,
                    timeout=self.timeout,
                )
                self.resources_decoded = True
                return
            except ToolFailure as decode_error:
                self.on_log(f"Warning: apktool full decode failed, retrying with -r (no resources). reason={decode_error}")

        run_logged_command(
            apktool + ["d", "-r", "-f", "-o", decoded_dir, self.apk_path],
            "apktool decode (-r)",
            self.on_log,
            timeout=self.timeout,
        )

    def needs_resource_decode(self, manifest: ManifestInfo) -> bool:
        """Synthesis without the binary editor needs a fully decoded manifest to edit as text."""
        if self.resources_decoded or manifest.has_application_class:
            return False
        return find_manifest_editor_cmd() is None

    def manifest_patchable(self, manifest: ManifestInfo) -> bool:
        if find_manifest_editor_cmd() is not None:
            return True
        return self.resources_decoded and manifest.textually_patchable

    def apply_plan(
        self,
        plan: InjectionPlan,
        artifact: ApkArtifact,
        manifest: ManifestInfo,
        classes: dict[str, str],
        decoded_dir: str,
        work_dir: str,
    ) -> tuple[set[str], Optional[ManifestEdit]]:
        if plan.strategy is Strategy.MANIFEST_SYNTHESIS:
            edit = apply_application_override(
                self.apk_path,
                os.path.join(decoded_dir, "AndroidManifest.xml"),
                manifest,
                plan.target_class,
                work_dir,
                self.on_log,
                self.timeout,
                allow_text=self.resources_decoded,
            )
            patch = write_synthetic_application(decoded_dir, artifact.cert_hex, artifact.package_name)
            self.on_log(f"Generated {plan.target_class} (.locals {patch.locals_count})")
            return {partition_of(decoded_dir, patch.path)}, edit

        patch = inject_into_smali(
            classes[plan.target_class], plan, artifact.cert_hex, artifact.package_name, self.on_log
        )
        return {partition_of(decoded_dir, patch.path)}, None

    def inject(
        self, artifact: ApkArtifact, manifest: ManifestInfo, decoded_dir: str, work_dir: str
    ) -> tuple[set[str], Optional[ManifestEdit]]:
        self.enter(Stage.PLANNING)
        classes = index_smali_classes(decoded_dir)
        self.on_log(f"Indexed {len(classes)} smali classes")
        plan = plan_injection(manifest, classes.keys(), self.manifest_patchable(manifest))
        self.on_log(f"Strategy: {plan.strategy.value} -> {plan.target_class}.{plan.target_method}")

        self.enter(Stage.INJECTING)
        try:
            touched, edit = self.apply_plan(plan, artifact, manifest, classes, decoded_dir, work_dir)
        except ManifestParseFailure as e:
            if plan.strategy is not Strategy.MANIFEST_SYNTHESIS:
                raise
            self.on_log(f"Manifest patch failed ({e}); falling back to a launch component")
            plan = plan_injection(manifest, classes.keys(), manifest_patchable=False)
            self.on_log(f"Strategy: {plan.strategy.value} -> {plan.target_class}.{plan.target_method}")
            touched, edit = self.apply_plan(plan, artifact, manifest, classes, decoded_dir, work_dir)

        helper_partition = select_helper_partition(decoded_dir)
        helpers = write_helper_classes(os.path.join(decoded_dir, helper_partition))
        self.on_log(f"Wrote {len(helpers)} helper classes into {helper_partition}")
        touched.add(helper_partition)
        return touched, edit

    def run(
        self, keystore_path: str, store_pass: str, key_pass: str, alias: str, output_apk: str
    ) -> ResignResult:
        self.timeout = resolve_tool_timeout(self.options.tool_timeout)
        with tempfile.TemporaryDirectory(prefix="hookresign-") as work_dir:
            self.enter(Stage.EXTRACTING)
            certificate = extract_certificate(self.apk_path, self.on_log)
            self.on_log(f"Original certificate ({certificate.source.value}): {certificate.cert_hex[:32]}...")
            package_name = analyze_apk(self.apk_path, self.on_log, self.options.tool_timeout)["package_name"] or None

            self.enter(Stage.DECOMPILING)
            apktool = ensure_apktool_cmd(self.on_log)
            decoded_dir = os.path.join(work_dir, "decoded")
            self.decompile(apktool, decoded_dir, full=self.options.decode_resources)
            manifest = load_manifest(os.path.join(decoded_dir, "AndroidManifest.xml"), package_name, self.on_log)
            if self.needs_resource_decode(manifest):
                self.on_log("No Application class and no binary manifest editor; decoding resources for a text edit")
                shutil.rmtree(decoded_dir)
                self.decompile(apktool, decoded_dir, full=True)
                manifest = load_manifest(os.path.join(decoded_dir, "AndroidManifest.xml"), package_name, self.on_log)
            artifact = ApkArtifact(
                path=self.apk_path,
                package_name=manifest.package_name,
                cert_hex=certificate.cert_hex,
                has_application_class=manifest.has_application_class,
                cert_source=certificate.source,
            )

            touched, edit = self.inject(artifact, manifest, decoded_dir, work_dir)

            self.enter(Stage.RECOMPILING)
            rebuilt_apk = os.path.join(work_dir, "rebuilt.apk")
            run_logged_command(
                apktool + ["b", "-o", rebuilt_apk, decoded_dir], "apktool build", self.on_log, timeout=self.timeout
            )

            self.enter(Stage.MERGING)
            manifest_bytes = None
            if edit is not None and edit.binary_manifest_path:
                with open(edit.binary_manifest_path, "rb") as f:
                    manifest_bytes = f.read()
            merged_apk = os.path.join(work_dir, "merged.apk")
            merge_into_original(
                self.apk_path,
                rebuilt_apk,
                merged_apk,
                touched,
                manifest_bytes=manifest_bytes,
                manifest_from_rebuild=edit is not None and edit.mode == "text",
                on_log=self.on_log,
            )

            self.enter(Stage.ALIGNING)
            aligned_apk = os.path.join(work_dir, "aligned.apk")
            zipalign_apk(merged_apk, aligned_apk, self.on_log, self.timeout)

            self.enter(Stage.SIGNING)
            signed_apk = os.path.join(work_dir, "signed.apk")
            sign_apk(aligned_apk, signed_apk, keystore_path, store_pass, key_pass, alias, self.on_log, self.options)

            if self.options.verify:
                self.enter(Stage.VERIFYING)
                try:
                    analyze_apk_signature(signed_apk, self.on_log, self.options.tool_timeout)
                except VerificationFailure as e:
                    self.on_log(f"Warning: {e}")

            shutil.move(signed_apk, output_apk)

        self.enter(Stage.DONE)
        self.on_log(f"Output: {output_apk}")
        return ResignResult(success=True, message="Injected and re-signed successfully", output_path=output_apk)


def inject_and_resign_apk(
    apk_path: str,
    keystore_path: str,
    store_pass: str,
    key_pass: str,
    alias: str,
    on_log: Optional[LogSink] = None,
    options: Optional[ResignOptions] = None,
) -> ResignResult:
    """Instrument ``apk_path`` to report its original certificate at runtime, then sign it with a new key.

    The result is written beside the input as ``<stem>_hooked_signed.apk``. On
    failure the result names the stage that failed and no output file is left.
    """
    on_log = on_log or print_log
    options = options or ResignOptions()
    job = ResignJob(apk_path, on_log, options)
    job.enter(Stage.INIT)

    if not apk_path or not os.path.isfile(apk_path):
        return ResignResult.failed(Stage.INIT, f"Failed at {Stage.INIT.value}: APK not found: {apk_path}")

    output_apk = signed_output_path(apk_path, HOOKED_SUFFIX)
    if os.path.exists(output_apk):
        os.remove(output_apk)

    try:
        return job.run(keystore_path, store_pass, key_pass, alias, output_apk)
    except (ResignError, OSError) as e:
        message = f"Failed at {job.stage.value}: {type(e).__name__}: {e}"
        on_log(message)
        if os.path.exists(output_apk):
            os.remove(output_apk)
        return ResignResult.failed(job.stage, message)
