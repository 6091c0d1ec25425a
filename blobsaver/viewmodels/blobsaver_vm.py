# blobsaver_vm.py
from __future__ import annotations

import logging
import threading
from typing import Callable, Optional, List

from blobsaver.config_service import load_config, save_config
from blobsaver.errors import FormField, Reportable, TSSCheckerError, Unreportable
from blobsaver.models import FailurePolicy, SaveOutcome, SigningRequest, TaskState, VersionResult
from blobsaver.tss_service import TSSService

logger = logging.getLogger(__name__)

STATE_MESSAGES = {
    TaskState.SUCCEEDED: "Done!",
    TaskState.FAILED: "Failed!",
    TaskState.CANCELLED: "Cancelled!",
}


class BlobSaverViewModel:
    """
    UI-agnostic application logic (the ViewModel in MVVM).

    Responsibilities:
      - Load/save configuration
      - Create and manage TSSService (argument building, running, classifying)
      - Expose the async 'save blobs' task and its cancellation
      - Emit title/status/log/completion events for the View to render

    The View should set these callbacks (all optional). They are called from
    the worker thread, so the View must hop back onto its own event loop:
      - on_title:     Callable[[str], None]
      - on_status:    Callable[[str, bool], None]      # (message, is_error)
      - on_log:       Callable[[str, bool], None]      # (message, is_error)
      - on_completed: Callable[[SaveOutcome], None]
    """

    # ---------- lifecycle ----------
    def __init__(self, base_dir: str):
        self.base_dir = base_dir
        self.config = load_config(base_dir)

        # public events (the View may assign these)
        self.on_title: Optional[Callable[[str], None]] = None
        self.on_status: Optional[Callable[[str, bool], None]] = None
        self.on_log: Optional[Callable[[str, bool], None]] = None
        self.on_completed: Optional[Callable[[SaveOutcome], None]] = None

        self.state = TaskState.PENDING
        self._cancel = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.svc = self._make_service()

    # ---------- helpers ----------
    def _emit_title(self, title: str) -> None:
        logger.info(title)
        if self.on_title:
            self.on_title(title)

    def _emit_status(self, msg: str, is_error: bool = False) -> None:
        if self.on_status:
            self.on_status(msg, is_error)
        if self.on_log:
            self.on_log(msg, is_error)

    def _emit_line(self, line: str) -> None:
        if self.on_log:
            self.on_log(line, False)

    def _make_service(self) -> TSSService:
        """Create a TSSService instance based on current config."""
        timeout = self.config.get("timeout_seconds")
        try:
            timeout = float(timeout) if timeout else None
        except (TypeError, ValueError):
            timeout = None
        return TSSService(
            tsschecker_path=self.config.get("tsschecker_path", ""),
            timeout=timeout,
            signed_versions_api=self.config.get("signed_versions_api"),
            on_line=self._emit_line,
        )

    @property
    def failure_policy(self) -> FailurePolicy:
        return FailurePolicy.from_config(self.config.get("failure_policy"))

    # ---------- queries ----------
    def get_config(self) -> dict:
        """Return the live config dict (for binding/editors)."""
        return self.config

    def is_running(self) -> bool:
        return self.state is TaskState.RUNNING

    @staticmethod
    def make_request(
        *,
        ecid: str,
        save_path: str,
        device_identifier: str,
        device_name: str = "",
        board_config: str = "",
        apnonce: str = "",
        ipsw_url: str = "",
        build_id: str = "",
        versions: str = "",
    ) -> SigningRequest:
        """Build a SigningRequest from raw form text. Blank optional fields become None."""
        def opt(value):
            value = (value or "").strip()
            return value or None

        version_list = tuple(v.strip() for v in (versions or "").split(",") if v.strip())
        return SigningRequest(
            ecid=(ecid or "").strip(),
            save_path=(save_path or "").strip(),
            device_identifier=(device_identifier or "").strip(),
            device_name=(device_name or "").strip(),
            board_config=opt(board_config),
            apnonce=opt(apnonce),
            ipsw_url=opt(ipsw_url),
            build_id=opt(build_id),
            versions=version_list,
        )

    # ---------- commands ----------
    def save_async(self, request: SigningRequest) -> None:
        """Kick off saving in a background thread."""
        if self.is_running():
            self._emit_status("Blobs are already being saved.", True)
            return
        # must be RUNNING before start(): cancel() and a second click rely on it
        self.state = TaskState.RUNNING
        self._cancel.clear()
        self._thread = threading.Thread(target=self._save_worker, args=(request,), daemon=True)
        self._thread.start()

    def cancel(self) -> None:
        if self.state in (TaskState.PENDING, TaskState.RUNNING):
            self._cancel.set()

    def _save_worker(self, request: SigningRequest) -> SaveOutcome:
        """Actual saving flow; runs off the UI thread."""
        self.state = TaskState.RUNNING
        policy = self.failure_policy
        results: List[VersionResult] = []
        first_error: Optional[TSSCheckerError] = None
        # only set when a requested version was left unsaved because of the cancel
        cancelled = False

        try:
            self.svc.check_identifier(request)
            self._emit_title("Searching for signed iOS versions...")
            versions = self.svc.versions_to_save(request)
            if not versions:
                raise Unreportable(f"No signed versions were found for {request.device_identifier}.",
                                   invalid_fields=(FormField.DEVICE,))
            for i, version in enumerate(versions):
                if self._cancel.is_set():
                    cancelled = True
                    break
                # e.g. (1/3) if first of 3 blobs
                self._emit_title(f"Saving iOS {version} blobs... ({i + 1}/{len(versions)})")
                try:
                    results.append(self.svc.save_blobs(request, version, self._cancel))
                    self._emit_status(f"Saved blobs for iOS {version}.")
                except TSSCheckerError as e:
                    results.append(VersionResult(version, False, e, e.log or ""))
                    if self._cancel.is_set():
                        cancelled = True
                        break
                    first_error = first_error or e
                    self._emit_status(str(e), True)
                    if policy is FailurePolicy.ABORT:
                        break
        except TSSCheckerError as e:
            cancelled = self._cancel.is_set()
            first_error = e
            self._emit_status(str(e), True)
        except Exception as e:
            logger.exception("Unexpected error while saving blobs")
            first_error = Reportable("Saving blobs failed.", original_exception=e)
            self._emit_status(str(first_error), True)

        if cancelled:
            self.state = TaskState.CANCELLED
        elif first_error is not None:
            self.state = TaskState.FAILED
        else:
            self.state = TaskState.SUCCEEDED

        outcome = SaveOutcome(self.state, results, first_error)
        self._emit_status(STATE_MESSAGES[self.state], self.state is TaskState.FAILED)
        if self.on_completed:
            self.on_completed(outcome)
        return outcome

    # ---------- configuration ----------
    def save_config(
        self,
        *,
        tsschecker_path: str,
        save_path: str,
        timeout_seconds: Optional[float] = None,
        failure_policy: str = "abort",
        ecid: str = "",
        device_identifier: str = "",
        device_name: str = "",
        board_config: str = "",
    ) -> None:
        """Persist configuration and reinitialize service."""
        self.config["tsschecker_path"] = (tsschecker_path or "").strip()
        self.config["save_path"] = (save_path or "").strip()
        self.config["timeout_seconds"] = timeout_seconds if timeout_seconds else None
        self.config["failure_policy"] = FailurePolicy.from_config(failure_policy).value
        self.config["ecid"] = (ecid or "").strip()
        self.config["device_identifier"] = (device_identifier or "").strip()
        self.config["device_name"] = (device_name or "").strip()
        self.config["board_config"] = (board_config or "").strip()

        # persist to disk
        save_config(self.base_dir, self.config)

        # hot-apply
        self.svc = self._make_service()

        self._emit_status("Configuration saved.", False)
