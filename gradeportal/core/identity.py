from gradeportal.core.errors import InvalidIdentity

MAX_IDENTITY_LENGTH = 255


def normalize_identity(raw: str | None) -> str:
    if not isinstance(raw, str):
        raise InvalidIdentity("Identity must be a string")

    identity = raw.strip().lower()
    if not identity:
        raise InvalidIdentity("Identity cannot be empty")
    if len(identity) > MAX_IDENTITY_LENGTH:
        raise InvalidIdentity(f"Identity cannot exceed {MAX_IDENTITY_LENGTH} characters")
    if any(ch.isspace() or not ch.isprintable() for ch in identity):
        raise InvalidIdentity("Identity cannot contain whitespace or control characters")
    return identity
