"""
Generation parameters, input validation and prompt construction.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List

from .errors import ValidationError

REQUIRED_FIELDS = (
    "senderName",
    "senderAddress",
    "recipientName",
    "recipientAddress",
    "issueDescription",
    "desiredOutcome",
)

MAX_LENGTHS = {
    "senderName": 100,
    "senderAddress": 500,
    "senderPhone": 20,
    "recipientName": 100,
    "recipientAddress": 500,
    "recipientPhone": 20,
    "issueDescription": 2000,
    "desiredOutcome": 1000,
    "deadlineDate": 50,
    "incidentDate": 50,
    "additionalDetails": 3000,
}

MAX_AMOUNT_DEMANDED = 10_000_000

DEFAULT_SYSTEM_PROMPT = (
    "You are a professional legal attorney drafting formal legal letters. "
    "Always produce professional, legally sound content with proper formatting."
)

_REQUIREMENTS = [
    "Requirements:",
    "- Write a professional, legally sound letter (300-500 words)",
    "- Include proper date and formal letter format",
    "- Present facts clearly and objectively",
    "- State clear demands with specific deadlines (if applicable)",
    "- Maintain professional legal tone throughout",
    "- Include proper salutations and closing",
    "- Format as a complete letter with all standard elements",
    "- Avoid any legal advice beyond standard letter writing",
    "",
    "Important: Only return the letter content itself, no explanations or commentary.",
]


@dataclass(frozen=True)
class GenerationParams:
    """Caller input for one letter generation."""
    letter_type: str
    intake_data: Dict[str, Any] = field(default_factory=dict)


def validate_params(params: GenerationParams) -> List[str]:
    """Collect every validation problem with the generation input.

    Returns:
        List of error messages, empty when the input is valid
    """
    errors = []
    if not isinstance(params.letter_type, str) or not params.letter_type.strip():
        errors.append("letter_type is required")

    data = params.intake_data
    if not isinstance(data, dict):
        return errors + ["intake_data must be a dictionary"]

    for name in REQUIRED_FIELDS:
        value = data.get(name)
        if not isinstance(value, str) or not value.strip():
            errors.append(f"{name} is required")

    for name, max_length in MAX_LENGTHS.items():
        value = data.get(name)
        if value is None:
            continue
        if not isinstance(value, str):
            errors.append(f"{name} must be a string")
        elif len(value) > max_length:
            errors.append(f"{name} must be at most {max_length} characters")

    amount = data.get("amountDemanded")
    if amount is not None and amount != "":
        if isinstance(amount, bool) or not isinstance(amount, (int, float)):
            errors.append("amountDemanded must be a number")
        elif not 0 <= amount <= MAX_AMOUNT_DEMANDED:
            errors.append(f"amountDemanded must be between 0 and {MAX_AMOUNT_DEMANDED:,}")

    return errors


def ensure_valid(params: GenerationParams) -> None:
    """Raise ValidationError listing every problem with the input."""
    errors = validate_params(params)
    if errors:
        raise ValidationError("Invalid input data: " + "; ".join(errors))


def _label(key: str) -> str:
    # senderName -> Sender Name
    words = re.sub(r"([A-Z])", r" \1", key).replace("_", " ")
    return words[:1].upper() + words[1:]


def _field(data: Dict[str, Any], key: str) -> str:
    value = data.get(key)
    if value is None or value == "":
        return ""
    return f"{_label(key)}: {value}"


def build_prompt(params: GenerationParams) -> str:
    """Render the generation prompt for a letter.

    Empty fields are omitted entirely.
    """
    data = params.intake_data
    amount = data.get("amountDemanded")
    lines = [
        f"Draft a professional {params.letter_type} letter with the following details:",
        "",
        "Sender Information:",
        _field(data, "senderName"),
        _field(data, "senderAddress"),
        _field(data, "senderEmail"),
        _field(data, "senderPhone"),
        "",
        "Recipient Information:",
        _field(data, "recipientName"),
        _field(data, "recipientAddress"),
        _field(data, "recipientEmail"),
        _field(data, "recipientPhone"),
        "",
        "Case Details:",
        _field(data, "issueDescription"),
        _field(data, "desiredOutcome"),
        f"Amount Demanded: ${amount:,.2f}" if amount else "",
        _field(data, "deadlineDate"),
        _field(data, "incidentDate"),
        _field(data, "additionalDetails"),
        "",
    ] + _REQUIREMENTS
    return "\n".join(line for line in lines if line)
