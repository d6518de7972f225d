"""OTP rule compilation and extraction logic (core domain)."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import re
from typing import Iterable, List, Optional, Tuple

from core.errors import ConfigurationError
from core.models import Message, OtpCandidate

OTP_PLACEHOLDER = "{otp}"
FIRST_MARKER_PLACEHOLDER = "{first}"
SECOND_MARKER_PLACEHOLDER = "{second}"

# Observed SSMMS/TSMDCL message variants, most specific first. The fallback
# rule must stay last because it captures the first token after the marker.
DEFAULT_RULES_CONFIG: List[dict] = [
    {
        "name": "otp_is_your_password",
        "template": r"{otp}\s+is\s+your\s+One\s+Time\s+Password.*{first}.*{second}",
        "markers": ["SSMMS", "TSMDCL"],
    },
    {
        "name": "use_otp_for",
        "template": r"Use\s+OTP\s+{otp}\s+for\s+{first}.*{second}",
        "markers": ["SSMMS", "TSMDCL"],
    },
    {
        "name": "your_password_is",
        "template": r"Your\s+One\s+Time\s+Password\s+is\s+{otp}\s+for\s+{first}.*{second}",
        "markers": ["SSMMS", "TSMDCL"],
    },
    {
        "name": "login_otp",
        "template": r"{first}.*?OTP\s+{otp}.*{second}",
        "markers": ["SSMMS", "TSMDCL"],
    },
    {
        "name": "fallback",
        "template": r"{first}.*?{otp}.*{second}",
        "markers": ["SSMMS", "TSMDCL"],
    },
]


@dataclass(frozen=True)
class ExtractionRule:
    """Compiled rule: a marker pair plus a pattern with one token capture."""

    name: str
    markers: Tuple[str, str]
    capture_group: int
    pattern: re.Pattern

    def matches(self, text: str) -> Optional[re.Match]:
        lowered = text.lower()
        if not all(marker.lower() in lowered for marker in self.markers):
            return None
        return self.pattern.search(text)


@dataclass(frozen=True)
class RuleMatch:
    """The winning rule and the token it captured."""

    rule_name: str
    otp: str


def _token_pattern(min_length: int, max_length: int) -> str:
    return rf"\b([A-Z0-9]{{{min_length},{max_length}}})\b"


def _compile_rule(rule: dict) -> ExtractionRule:
    name = rule.get("name")
    if not name:
        raise ConfigurationError("Every rule needs a name")

    template = rule.get("template", "")
    if OTP_PLACEHOLDER not in template:
        raise ConfigurationError(f"Rule {name!r} template has no {OTP_PLACEHOLDER} placeholder")

    markers = list(rule.get("markers", []))
    if len(markers) != 2 or not all(isinstance(m, str) and m for m in markers):
        raise ConfigurationError(f"Rule {name!r} needs exactly two non-empty markers")

    min_length = int(rule.get("min_length", 4))
    max_length = int(rule.get("max_length", 6))
    if min_length < 1 or min_length > max_length:
        raise ConfigurationError(f"Rule {name!r} has an invalid token length range")

    capture_group = int(rule.get("capture_group", 1))

    # Placeholders are substituted literally so regex braces in templates
    # never collide with str.format syntax.
    source = (
        template.replace(FIRST_MARKER_PLACEHOLDER, re.escape(markers[0]))
        .replace(SECOND_MARKER_PLACEHOLDER, re.escape(markers[1]))
        .replace(OTP_PLACEHOLDER, _token_pattern(min_length, max_length))
    )
    try:
        pattern = re.compile(source, re.IGNORECASE | re.DOTALL)
    except re.error as exc:
        raise ConfigurationError(f"Rule {name!r} does not compile: {exc}") from exc
    if capture_group < 1 or capture_group > pattern.groups:
        raise ConfigurationError(f"Rule {name!r} capture_group {capture_group} is out of range")

    return ExtractionRule(
        name=name,
        markers=(markers[0], markers[1]),
        capture_group=capture_group,
        pattern=pattern,
    )


def build_rules(rules_config: Iterable[dict]) -> List[ExtractionRule]:
    """Normalize rule configs and compile their patterns, preserving order.

    Disabled rules are skipped. Any malformed rule fails the whole build so a
    typo never silently shifts rule priority.
    """

    return [_compile_rule(rule) for rule in rules_config if rule.get("enabled", True)]


def match_first(text: Optional[str], rules: Iterable[ExtractionRule]) -> Optional[RuleMatch]:
    """Return the capture of the first matching rule, or None.

    Later rules are not evaluated once one matches.
    """

    if not text or not isinstance(text, str):
        return None

    for rule in rules:
        found = rule.matches(text)
        if found is None:
            continue
        otp = found.group(rule.capture_group)
        if otp:
            return RuleMatch(rule_name=rule.name, otp=otp)
    return None


class PatternRuleSet:
    """Ordered, immutable set of extraction rules."""

    def __init__(self, rules: Iterable[ExtractionRule]) -> None:
        self._rules = tuple(rules)

    @classmethod
    def from_config(cls, rules_config: Iterable[dict]) -> "PatternRuleSet":
        return cls(build_rules(rules_config))

    @classmethod
    def default(cls) -> "PatternRuleSet":
        return cls.from_config(DEFAULT_RULES_CONFIG)

    def __len__(self) -> int:
        return len(self._rules)

    def extract(self, message_body: Optional[str]) -> Optional[str]:
        match = match_first(message_body, self._rules)
        return match.otp if match else None

    def extract_candidate(self, message: Message) -> Optional[OtpCandidate]:
        match = match_first(message.body, self._rules)
        if match is None:
            return None
        return OtpCandidate(
            value=match.otp,
            rule_name=match.rule_name,
            extracted_at=datetime.now(timezone.utc),
            source_message_id=message.message_id,
        )
