import os


def require_env(name: str) -> str:
    """Return a mandatory setting, failing fast at startup when it is blank."""
    value = os.environ.get(name, "").strip()
    if not value:
        raise RuntimeError(f"{name} must be set in the environment")
    return value


def optional_env(name: str, default: str = "") -> str:
    """Non-secret settings only: hosts, ports, thresholds, feature switches."""
    return os.environ.get(name, default)


def env_flag(name: str, default: bool = False) -> bool:
    """1/true/yes/on, any case, is true; unset or blank gives ``default``."""
    raw = os.environ.get(name, "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")
