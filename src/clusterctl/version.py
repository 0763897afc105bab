"""Server version feature gates."""


def parse_version(version: str) -> tuple[int, int, int] | None:
    """Parse a ``major.minor.patch`` version string; None if malformed."""
    parts = version.strip().split(".")
    if len(parts) != 3:
        return None
    try:
        major, minor, patch = (int(p) for p in parts)
    except ValueError:
        return None
    return major, minor, patch


def version_supports_transition_to_standby(version: str) -> bool:
    """Whether a server at ``version`` offers the consensus-gated standby transition.

    Added in 1.6.0.
    """
    parsed = parse_version(version)
    if parsed is None:
        return False
    return parsed >= (1, 6, 0)
