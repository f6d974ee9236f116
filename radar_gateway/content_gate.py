"""
Radar Content Gate

Structural validation and sanitization of free text before it reaches the
conversational engine.

Checks (applied in order, all violations accumulated):
- (a) null / control bytes: stripped from the sanitized text
- (b) command-injection shaped patterns: detection only
- (c) prompt-injection shaped patterns: detection only
- (d) length over the limit: sanitized text is truncated
- (e) empty after trimming whitespace

Pattern detection is a heuristic first line of defense, not a sole control.
The rules are grouped into versioned pattern families so they can be swapped
without touching the control flow.

Violation strings describe the category only; they never echo matched text.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Pattern, Sequence, Tuple

logger = logging.getLogger("radar_gateway.content_gate")

# Telegram's hard limit is 4096; stay under it.
MAX_MESSAGE_LENGTH = 4000
MAX_OUTPUT_LENGTH = 4096

# Everything in C0 plus DEL, except tab, newline and carriage return.
_CONTROL_BYTES = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")

VIOLATION_CONTROL_BYTES = "Contains null bytes or dangerous characters"
VIOLATION_EMPTY = "Message is empty after sanitization"
VIOLATION_INTERNAL = "Validation error occurred"
VIOLATION_TOOL_INTERNAL = "Tool input validation error"


def _length_violation(max_length: int) -> str:
    return f"Message exceeds maximum length of {max_length} characters"


@dataclass(frozen=True)
class PatternFamily:
    """A named, versioned group of regexes that share one violation message."""

    name: str
    version: str
    patterns: Tuple[Pattern[str], ...]
    violation: str

    @classmethod
    def compile(cls, name: str, version: str, sources: Sequence[str], violation: str, flags: int = 0) -> "PatternFamily":
        return cls(name, version, tuple(re.compile(s, flags) for s in sources), violation)

    def matches(self, text: str) -> bool:
        return any(p.search(text) for p in self.patterns)


@dataclass(frozen=True)
class RuleSet:
    name: str
    families: Tuple[PatternFamily, ...] = field(default_factory=tuple)

    @property
    def version(self) -> str:
        return ",".join(f"{f.name}@{f.version}" for f in self.families)

    def with_family(self, family: PatternFamily) -> "RuleSet":
        """Return a copy with ``family`` added (or replacing one of the same name)."""
        kept = tuple(f for f in self.families if f.name != family.name)
        return RuleSet(self.name, kept + (family,))

    def without_family(self, name: str) -> "RuleSet":
        return RuleSet(self.name, tuple(f for f in self.families if f.name != name))


COMMAND_INJECTION = PatternFamily.compile(
    "command_injection",
    "1",
    [
        r"`[^`]*`",  # backticked span
        r"\$\([^)]*\)",  # $(...) substitution
        r";\s*[a-zA-Z]",
        r"\|\s*[a-zA-Z]",
        r"&&\s*[a-zA-Z]",
        r"\|\|\s*[a-zA-Z]",
        r">\s*/[a-zA-Z]",  # redirect to an absolute path
        r"<\s*/[a-zA-Z]",
    ],
    "Contains potential command injection patterns",
)

PROMPT_INJECTION = PatternFamily.compile(
    "prompt_injection",
    "1",
    [
        r"ignore\s+(previous|all|prior)\s+instructions?",
        r"disregard\s+(previous|all|prior)\s+instructions?",
        r"forget\s+(previous|all|prior)\s+instructions?",
        r"new\s+instructions?:",
        r"system\s+prompt",
        r"you\s+are\s+now",
        r"your\s+new\s+(role|instructions?|task)",
        r"\[INST\]",
        r"\[/INST\]",
        r"<\|im_start\|>",
        r"<\|im_end\|>",
    ],
    "Contains potential prompt injection patterns",
    flags=re.IGNORECASE,
)

SEVERE_COMMAND_INJECTION = PatternFamily.compile(
    "severe_command_injection",
    "1",
    [
        r"`rm\s+-rf",
        r"`curl.*\|.*sh",
        r"`wget.*\|.*sh",
    ],
    "Contains severe command injection patterns",
    flags=re.IGNORECASE,
)

DEFAULT_RULE_SET = RuleSet("user_text", (COMMAND_INJECTION, PROMPT_INJECTION))
TOOL_ARGS_RULE_SET = RuleSet("tool_args", (SEVERE_COMMAND_INJECTION,))


@dataclass
class ValidationResult:
    is_valid: bool
    sanitized: str
    violations: List[str] = field(default_factory=list)


def strip_control_bytes(text: str) -> Tuple[str, bool]:
    """Returns (cleaned, found)."""
    cleaned = _CONTROL_BYTES.sub("", text)
    return cleaned, len(cleaned) != len(text)


def _strip_null_bytes(value: Any) -> Tuple[Any, bool]:
    """Remove NUL characters from every string in a JSON-like value, keys included."""
    if isinstance(value, str):
        return value.replace("\x00", ""), "\x00" in value
    if isinstance(value, dict):
        out: Dict[Any, Any] = {}
        found = False
        for k, v in value.items():
            k2, kf = _strip_null_bytes(k)
            v2, vf = _strip_null_bytes(v)
            out[k2] = v2
            found = found or kf or vf
        return out, found
    if isinstance(value, (list, tuple)):
        items = [_strip_null_bytes(v) for v in value]
        return [v for v, _ in items], any(f for _, f in items)
    return value, False


class ContentGate:
    """Evaluates free text and tool arguments against pluggable rule sets."""

    def __init__(
        self,
        rule_set: Optional[RuleSet] = None,
        tool_rule_set: Optional[RuleSet] = None,
        max_length: int = MAX_MESSAGE_LENGTH,
    ):
        self.rule_set = rule_set or DEFAULT_RULE_SET
        self.tool_rule_set = tool_rule_set or TOOL_ARGS_RULE_SET
        self.max_length = int(max_length)

    @classmethod
    def from_config(cls, config: Any, **kwargs: Any) -> "ContentGate":
        return cls(max_length=config.max_message_length, **kwargs)

    def validate(self, text: str, max_length: Optional[int] = None) -> ValidationResult:
        limit = self.max_length if max_length is None else int(max_length)
        violations: List[str] = []
        try:
            sanitized, found = strip_control_bytes(text)
            if found:
                violations.append(VIOLATION_CONTROL_BYTES)

            for family in self.rule_set.families:
                if family.matches(sanitized):
                    violations.append(family.violation)

            if len(sanitized) > limit:
                violations.append(_length_violation(limit))
                sanitized = sanitized[:limit]

            sanitized = sanitized.strip()
            if not sanitized:
                violations.append(VIOLATION_EMPTY)
        except Exception as e:
            logger.error("Error during input validation; rejecting: %s", e)
            return ValidationResult(False, "", [VIOLATION_INTERNAL])

        result = ValidationResult(not violations, sanitized, violations)
        if violations:
            logger.warning(
                "Input validation failed: violations=%s original_length=%d sanitized_length=%d rules=%s",
                violations,
                len(text),
                len(sanitized),
                self.rule_set.version,
            )
        return result

    def validate_tool_input(self, arguments: Any) -> ValidationResult:
        """Permissive check for structured tool arguments.

        Only the severe shell-pipeline family is applied; tool arguments are
        JSON and ordinary punctuation in them is legitimate.
        """
        violations: List[str] = []
        try:
            cleaned, found = _strip_null_bytes(arguments)
            if found:
                violations.append(VIOLATION_CONTROL_BYTES)
            sanitized = json.dumps(cleaned, default=str)

            for family in self.tool_rule_set.families:
                if family.matches(sanitized):
                    violations.append(family.violation)
        except Exception as e:
            logger.error("Error during tool input validation; rejecting: %s", e)
            return ValidationResult(False, "", [VIOLATION_TOOL_INTERNAL])

        if violations:
            logger.warning("Tool input validation failed: violations=%s", violations)
        return ValidationResult(not violations, sanitized, violations)


_DEFAULT_GATE = ContentGate()


def validate_user_input(text: str, max_length: int = MAX_MESSAGE_LENGTH) -> ValidationResult:
    return _DEFAULT_GATE.validate(text, max_length)


def validate_tool_input(arguments: Any) -> ValidationResult:
    return _DEFAULT_GATE.validate_tool_input(arguments)


def is_safe_string(text: str) -> bool:
    """Quick check without full validation."""
    return "\x00" not in text and len(text) <= MAX_MESSAGE_LENGTH and bool(text.strip())


def sanitize_output(text: str, max_length: int = MAX_OUTPUT_LENGTH) -> str:
    """Strip null bytes and cap length before text goes back to a user."""
    try:
        cleaned = text.replace("\x00", "")
        if len(cleaned) > max_length:
            cleaned = cleaned[: max(0, max_length - 3)] + "..."
        return cleaned
    except Exception as e:
        logger.error("Error sanitizing output: %s", e)
        return "[Error sanitizing output]"
