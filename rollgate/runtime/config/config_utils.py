"""Environment variable substitution for configuration templates."""

import os
import re

_PLACEHOLDER = re.compile(r"\$\{([^}]+)\}")


def substitute_env_vars(text: str) -> str:
    """
    Substitute environment variable placeholders in text.

    Supports formats:
    - ${VAR_NAME} - required variable (raises error if missing)
    - ${VAR_NAME:-default} - optional with default value
    - ${VAR_NAME:?error_message} - required with custom error message

    Raises:
        ValueError: If a required variable is not set
    """

    def replacer(match: re.Match[str]) -> str:
        expression = match.group(1)

        if ":-" in expression:
            name, default = expression.split(":-", 1)
            return os.getenv(name.strip(), default)

        if ":?" in expression:
            name, message = expression.split(":?", 1)
            value = os.getenv(name.strip())
            if value is None:
                raise ValueError(f"Required environment variable {name.strip()}: {message}")
            return value

        name = expression.strip()
        value = os.getenv(name)
        if value is None:
            raise ValueError(f"Required environment variable {name} not set")
        return value

    return _PLACEHOLDER.sub(replacer, text)
