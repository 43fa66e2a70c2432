from typing import Iterable, Mapping, Dict


# Removing these forces the CLI onto its own stored login instead of metered API billing.
DEFAULT_SHADOWED_ENV_VARS = (
    "ANTHROPIC_API_KEY",
    "ANTHROPIC_API_KEY_ID",
    "ANTHROPIC_AUTH_TOKEN",
)


def sanitize_environment(
    base: Mapping[str, str],
    shadowed: Iterable[str] = DEFAULT_SHADOWED_ENV_VARS,
) -> Dict[str, str]:
    """Return a copy of ``base`` without any credential-shadowing variable."""
    blocked = {name.upper() for name in shadowed}
    return {key: value for key, value in base.items() if key.upper() not in blocked}
