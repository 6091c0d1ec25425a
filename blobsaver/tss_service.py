# tss_service.py
import logging
import os
import threading
from pathlib import Path
from typing import Callable, List, Optional

from blobsaver.errors import FormField, Reportable, Unreportable
from blobsaver.executor import TSSCheckerRunner
from blobsaver.log_rules import Classification, RuleContext, classify
from blobsaver.manifest import fetch_build_manifest, read_build_id
from blobsaver.models import SigningRequest, VersionResult
from blobsaver.signed_versions import DEFAULT_API, get_all_signed_versions
from blobsaver.tsschecker_commands import (
    ToolArg, GeneratorArg, NoCacheArg, DeviceArg, SaveFlagArg, EcidArg,
    SavePathArg, VersionArg, BoardConfigArg, ApnonceArg, BetaArg, render_args,
)


class TSSService:
    def __init__(
        self,
        tsschecker_path: str,
        timeout: Optional[float] = None,
        signed_versions_api: str = DEFAULT_API,
        on_line: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.tsschecker_path = tsschecker_path
        self.signed_versions_api = signed_versions_api or DEFAULT_API
        self.runner = TSSCheckerRunner(timeout=timeout, on_line=on_line)
        self.build_manifest: Optional[Path] = None

    # ---------- versions ----------
    def versions_to_save(self, request: SigningRequest) -> List[str]:
        """The explicit version list, or every version currently being signed."""
        if request.versions:
            return list(request.versions)
        return get_all_signed_versions(request.device_identifier, self.signed_versions_api)

    def check_identifier(self, request: SigningRequest) -> None:
        if not (request.device_identifier or "").strip():
            raise Unreportable("No device identifier was given.", invalid_fields=(FormField.DEVICE,))

    # ---------- build manifest ----------
    def fetch_build_manifest(self, ipsw_url: str) -> Path:
        self.build_manifest = fetch_build_manifest(ipsw_url)
        return self.build_manifest

    def delete_build_manifest(self) -> None:
        if self.build_manifest is not None:
            try:
                os.remove(self.build_manifest)
            except FileNotFoundError:
                pass
            self.build_manifest = None

    # ---------- tsschecker ----------
    def build_args(self, request: SigningRequest, version: str,
                   manifest_path: Optional[Path] = None, build_id: Optional[str] = None) -> List[str]:
        args = [
            ToolArg(self.tsschecker_path),
            GeneratorArg(),
            NoCacheArg(),
            DeviceArg(request.device_identifier),
            SaveFlagArg(),
            EcidArg(request.ecid),
            SavePathArg(request.save_path),
            VersionArg(version),
        ]
        if request.uses_custom_board_config:
            args.append(BoardConfigArg(request.board_config))
        if request.uses_custom_apnonce:
            args.append(ApnonceArg(request.apnonce))
        if manifest_path is not None:
            args.append(BetaArg(version, build_id, manifest_path))
        return render_args(args)

    def run_tsschecker(self, args: List[str], cancel_event: Optional[threading.Event] = None) -> str:
        return self.runner.run(args, cancel_event)

    def analyze_output(self, text: str, request: SigningRequest, version: str,
                       build_id: Optional[str] = None) -> Classification:
        return classify(text, RuleContext(request, version, build_id))

    def save_blobs(self, request: SigningRequest, version: str,
                   cancel_event: Optional[threading.Event] = None) -> VersionResult:
        """Save blobs for one version. Raises a TSSCheckerError on failure."""
        self.check_identifier(request)
        try:
            os.makedirs(request.save_path, exist_ok=True)
        except OSError as e:
            # tsschecker reports the unusable path itself
            logging.warning(f"Could not create save directory {request.save_path}: {e}")

        build_id = request.build_id
        try:
            manifest_path = None
            if request.uses_beta:
                manifest_path = self.fetch_build_manifest(request.ipsw_url)
                if not build_id:
                    try:
                        build_id = read_build_id(manifest_path)
                    except (ValueError, OSError) as e:
                        raise Reportable("Unable to read BuildManifest from .ipsw URL",
                                         original_exception=e) from e
                if not build_id:
                    raise Unreportable("Could not determine the build ID for the .ipsw file. "
                                       "Please enter it manually.",
                                       invalid_fields=(FormField.BUILD_ID,))
            args = self.build_args(request, version, manifest_path, build_id)
            out = self.run_tsschecker(args, cancel_event)
            outcome = self.analyze_output(out, request, version, build_id)
            if not outcome.success:
                logging.error(f"Saving {version} failed ({outcome.rule})")
                outcome.error.log = out
                raise outcome.error
            return VersionResult(version, True, raw_output=out)
        finally:
            self.delete_build_manifest()
