#!/usr/bin/env python3
"""Security & PII gate for runtime code.

Fails if:
- print( found in runtime code (src/**)
- A logger call line mentions guest contact data, OTA payloads, webhook
  signatures or channel credentials without going through redaction

Only the line holding the logger call is inspected; keep sensitive names off
that line or wrap them in safe_log_context.

Usage:
    python scripts/gate_security_pii.py
"""

import re
import sys
from pathlib import Path

SENSITIVE_KEYWORDS = (
    "payload",
    "raw_body",
    "request.body",
    "request.json",
    "signature",
    "credentials",
    "webhook_secret",
    "api_key",
    "ical_url",
    "guest_name",
    "guest_email",
    "guest_phone",
    "phone",
    "email",
)

PRINT_PATTERN = re.compile(r"\bprint\s*\(")

LOGGER_CALL_PATTERN = re.compile(
    r"logger\.(debug|info|warning|error|critical|exception)\s*\("
)

REDACTION_PATTERNS = (
    "safe_log_context",
    "redact_value",
    "redact_string",
)


def check_source(text: str, label: str = "<source>") -> list[str]:
    """Violations found in one file's text, as `label:lineno: message`."""
    errors = []
    for lineno, line in enumerate(text.splitlines(), start=1):
        if line.lstrip().startswith("#"):
            continue
        code_part = line.split("#")[0]

        if PRINT_PATTERN.search(code_part):
            errors.append(f"{label}:{lineno}: print() not allowed in runtime code")

        if LOGGER_CALL_PATTERN.search(code_part):
            lowered = code_part.lower()
            if any(rp in code_part for rp in REDACTION_PATTERNS):
                continue
            for keyword in SENSITIVE_KEYWORDS:
                if keyword in lowered:
                    errors.append(
                        f"{label}:{lineno}: logger call with '{keyword}' "
                        "must use redaction (safe_log_context/redact_value)"
                    )
    return errors


def check_file(filepath: Path) -> list[str]:
    try:
        content = filepath.read_text(encoding="utf-8")
    except UnicodeDecodeError:
        return []
    return check_source(content, str(filepath))


def find_src_dir() -> Path | None:
    for candidate in (Path("src"), Path(__file__).resolve().parent.parent / "src"):
        if candidate.exists():
            return candidate
    return None


def main() -> int:
    src_dir = find_src_dir()
    if src_dir is None:
        sys.stderr.write("Error: src directory not found\n")
        return 1

    all_errors: list[str] = []
    for pyfile in sorted(src_dir.rglob("*.py")):
        all_errors.extend(check_file(pyfile))

    if all_errors:
        sys.stderr.write("PII gate FAILED - violations found:\n")
        for err in all_errors:
            sys.stderr.write(f"  {err}\n")
        return 1

    sys.stdout.write("PII gate PASSED\n")
    return 0


if __name__ == "__main__":
    sys.exit(main())
