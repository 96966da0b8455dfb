# Vault - Input Validation
#
# Every user-supplied field is checked before it reaches SQLite.
# API keys legitimately contain - _ . / = + so only comment and
# statement-separator sequences are rejected.

import re
from typing import Any, Dict, Optional

from ..core.exceptions import ValidationError

MAX_FIELD_LENGTH = 2000
MAX_NAME_LENGTH = 100
MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 1024
MAX_ROTATION_INTERVAL_DAYS = 3650
MIN_API_KEY_LENGTH = 10
DEFAULT_LLM_PROVIDER = "openai"
DEFAULT_LLM_MODEL = "gpt-4"

_FORBIDDEN = re.compile(r"(--)|(;)|(/\*)|(\*/)")


def validate_field(field: str, value: Optional[str], required: bool = False) -> Optional[str]:
    """Check one text field and return it unchanged.

    Raises:
        ValidationError: missing required value, wrong type,
            oversize input or forbidden character sequence.
    """
    if value is None or value == "":
        if required:
            raise ValidationError(f"{field} is required", field=field)
        return None

    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string", field=field)

    if len(value) > MAX_FIELD_LENGTH:
        raise ValidationError(f"{field} too long (max {MAX_FIELD_LENGTH} characters)", field=field)

    if _FORBIDDEN.search(value):
        raise ValidationError(f"Invalid characters in {field}", field=field)

    return value


def validate_name(name: Optional[str]) -> str:
    validate_field("name", name, required=True)
    if len(name) > MAX_NAME_LENGTH:
        raise ValidationError(f"Name too long (max {MAX_NAME_LENGTH} characters)", field="name")
    return name


def validate_rotation_interval(days) -> int:
    if isinstance(days, bool) or not isinstance(days, int):
        raise ValidationError("rotation_interval_days must be an integer",
                              field="rotation_interval_days")
    if not 1 <= days <= MAX_ROTATION_INTERVAL_DAYS:
        raise ValidationError(
            f"rotation_interval_days must be between 1 and {MAX_ROTATION_INTERVAL_DAYS}",
            field="rotation_interval_days",
        )
    return days


def validate_master_password(password: Optional[str]) -> str:
    """
    Verify master password meets the minimum requirements.

    Length is the only rule: passphrases such as "correct-horse-battery"
    are accepted.
    """
    if not isinstance(password, str) or not password:
        raise ValidationError("Password required", field="password")

    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(
            f"Password must be at least {MIN_PASSWORD_LENGTH} characters", field="password"
        )

    if len(password) > MAX_PASSWORD_LENGTH:
        raise ValidationError(
            f"Password too long (max {MAX_PASSWORD_LENGTH} characters)", field="password"
        )

    return password


def validate_llm_config(config: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize an LLM provider config to {provider, model, apiKey}.

    provider and model fall back to the defaults when omitted.
    """
    api_key = config.get("apiKey")
    if not isinstance(api_key, str) or len(api_key) < MIN_API_KEY_LENGTH:
        raise ValidationError(
            f"Valid API key required (minimum {MIN_API_KEY_LENGTH} characters)", field="apiKey"
        )
    if len(api_key) > MAX_FIELD_LENGTH:
        raise ValidationError(f"apiKey too long (max {MAX_FIELD_LENGTH} characters)", field="apiKey")

    return {
        "provider": validate_field("provider", config.get("provider")) or DEFAULT_LLM_PROVIDER,
        "model": validate_field("model", config.get("model")) or DEFAULT_LLM_MODEL,
        "apiKey": api_key,
    }
