# log_rules.py
"""
Classification of tsschecker output.

tsschecker reports everything as free text, so the only way to tell what went
wrong is to look for the lines it is known to print. The rules below are tried
in order and the first match wins. A log containing "Saved" is always a
success, whatever else it says.

Patterns are format strings filled in from the RuleContext, e.g. the ECID rule
only fires for the ECID that was actually passed on the command line.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, List, Optional

from blobsaver.errors import (
    FormField, PRESET_HINT, Reportable, TSSCheckerError, Unreportable,
)
from blobsaver.models import SigningRequest

SUCCESS_MARKER = "Saved"

Predicate = Callable[[str, "RuleContext"], bool]


@dataclass(frozen=True)
class RuleContext:
    request: SigningRequest
    version: str
    build_id: Optional[str] = None

    def fill(self, template: str) -> str:
        r = self.request
        return template.format(
            ecid=r.ecid,
            device=r.device_identifier,
            device_name=r.device_name or r.device_identifier,
            version=self.version,
            apnonce=r.apnonce or "",
            build_id=self.build_id or r.build_id or "",
            save_path=r.save_path,
            ipsw_url=r.ipsw_url or "",
        )


def contains(template: str) -> Predicate:
    return lambda log, ctx: ctx.fill(template) in log


def contains_ignore_case(template: str) -> Predicate:
    return lambda log, ctx: ctx.fill(template).lower() in log.lower()


def all_of(*predicates: Predicate) -> Predicate:
    return lambda log, ctx: all(p(log, ctx) for p in predicates)


def any_of(*predicates: Predicate) -> Predicate:
    return lambda log, ctx: any(p(log, ctx) for p in predicates)


@dataclass(frozen=True)
class Rule:
    name: str
    predicate: Predicate
    reportable: bool
    message: str
    fields: Callable[[RuleContext], tuple] = lambda ctx: ()
    append_report_request: bool = True

    def matches(self, log: str, ctx: RuleContext) -> bool:
        return self.predicate(log, ctx)

    def build_error(self, ctx: RuleContext) -> TSSCheckerError:
        message = ctx.fill(self.message)
        fields = self.fields(ctx)
        if self.reportable:
            return Reportable(message, self.append_report_request, fields)
        return Unreportable(message, self.append_report_request, fields)


@dataclass
class Classification:
    success: bool
    error: Optional[TSSCheckerError] = None
    rule: Optional[str] = None

    def __bool__(self):
        return self.success


def _field(*fields: FormField) -> Callable[[RuleContext], tuple]:
    return lambda ctx: fields


def _not_signed_fields(ctx: RuleContext) -> tuple:
    fields = []
    if not ctx.request.saving_all_signed_versions:
        fields.append(FormField.VERSION)
    if ctx.request.uses_beta:
        fields += [FormField.BUILD_ID, FormField.IPSW_URL]
    return tuple(fields)


URL_REQUIREMENTS = (
    'Make sure it starts with "http://" or "https://", has "apple" in it, and ends with ".ipsw"'
)

RULES: List[Rule] = [
    Rule(
        name="invalid_ecid",
        predicate=contains("[Error] [TSSC] manually specified ecid={ecid}, but parsing failed"),
        reportable=False,
        message='"{ecid}" is not a valid ECID. Try getting it from iTunes.\n\n' + PRESET_HINT,
        fields=_field(FormField.ECID),
    ),
    Rule(
        name="device_not_found",
        predicate=contains("could not be found in devicelist"),
        reportable=True,
        message=(
            'TSSChecker could not find device: "{device}"\n\n'
            "Please create a new Github issue or PM me on Reddit if you used the dropdown menu.\n\n"
            + PRESET_HINT
        ),
        append_report_request=False,
    ),
    Rule(
        name="no_url_for_version",
        predicate=contains_ignore_case("[TSSC] ERROR: could not get url for device {device} on iOS {version}"),
        reportable=False,
        message=(
            'Could not find device "{device}" on iOS/tvOS {version}\n\n'
            "The version doesn't exist or isn't compatible with the device"
        ),
        fields=_field(FormField.VERSION),
    ),
    Rule(
        name="invalid_apnonce",
        predicate=contains("[Error] [TSSC] manually specified apnonce={apnonce}, but parsing failed"),
        reportable=False,
        message='"{apnonce}" is not a valid apnonce',
        fields=_field(FormField.APNONCE),
    ),
    Rule(
        name="tss_request_failed",
        predicate=all_of(
            contains("[WARNING] [TSSC] could not get id0 for installType=Erase. "
                     "Using fallback installType=Update since user did not specify installType manually"),
            contains("[Error] [TSSR] Error: could not get id0 for installType=Update"),
            any_of(
                contains_ignore_case("[Error] [TSSR] faild to build tssrequest"),
                contains_ignore_case("[Error] [TSSR] faild to build TSS request"),
            ),
            contains_ignore_case("Error] [TSSC] checking tss status failed!"),
        ),
        reportable=True,
        message=(
            "Saving blobs failed. Check the board configuration or try again later.\n\n"
            "If this doesn't work, please create a new issue on Github or PM me on Reddit. "
            "The log has been copied to your clipboard.\n\n" + PRESET_HINT
        ),
        fields=_field(FormField.BOARD_CONFIG),
        append_report_request=False,
    ),
    Rule(
        name="host_unresolved",
        predicate=contains("[Error] ERROR: TSS request failed: Could not resolve host:"),
        reportable=True,
        message=(
            "Saving blobs failed. Check your internet connection.\n\n"
            "If your internet is working and you can connect to apple.com in your browser, "
            "please create a new issue on Github or PM me on Reddit. "
            "The log has been copied to your clipboard.\n\n" + PRESET_HINT
        ),
        append_report_request=False,
    ),
    # "can't save signing tickets at ..." and "can't save shsh blobs at ..."
    Rule(
        name="cannot_save",
        predicate=contains_ignore_case("[Error] can't save"),
        reportable=False,
        message="'{save_path}' is not a valid path\n\n" + PRESET_HINT,
        fields=_field(FormField.SAVE_PATH),
    ),
    Rule(
        name="not_signed",
        predicate=any_of(
            contains("iOS {version} for device {device} IS NOT being signed!"),
            contains("Build {build_id} for device {device} IS NOT being signed!"),
        ),
        reportable=False,
        message="iOS/tvOS {version} is not being signed for device {device}",
        fields=_not_signed_fields,
    ),
    Rule(
        name="manifest_load_failed",
        predicate=contains("[Error] [TSSC] failed to load manifest"),
        reportable=True,
        message=(
            'Failed to load manifest.\n\n "{ipsw_url}" might not be a valid URL.\n\n'
            + URL_REQUIREMENTS + "\n\n"
            "If the URL is fine, please create a new issue on Github or PM me on Reddit. "
            "The log has been copied to your clipboard"
        ),
        append_report_request=False,
    ),
    Rule(
        name="manifest_mismatch",
        predicate=contains("[Error] [TSSC] selected device can't be used with that buildmanifest"),
        reportable=False,
        message="Device and build manifest don't match.",
    ),
    Rule(
        name="generic_error",
        predicate=contains("[Error]"),
        reportable=True,
        message="Saving blobs failed.\n\n" + PRESET_HINT,
    ),
]

UNKNOWN_RESULT = Rule(
    name="unknown_result",
    predicate=lambda log, ctx: True,
    reportable=True,
    message="Unknown result.\n\n" + PRESET_HINT,
)


def classify(log: str, ctx: RuleContext, rules: Optional[List[Rule]] = None) -> Classification:
    if SUCCESS_MARKER in log:
        return Classification(True, rule="saved")
    for rule in (RULES if rules is None else rules):
        if rule.matches(log, ctx):
            return Classification(False, rule.build_error(ctx), rule.name)
    return Classification(False, UNKNOWN_RESULT.build_error(ctx), UNKNOWN_RESULT.name)


def interpret_result(log: str, ctx: RuleContext) -> None:
    """Raise the classified error for a failed run; return quietly on success."""
    result = classify(log, ctx)
    if not result.success:
        raise result.error
