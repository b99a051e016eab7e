from pwdlib import PasswordHash

from marketplace.errors import ValidationFailed

MIN_PASSWORD_LENGTH = 8

password_hash = PasswordHash.recommended()


def check_password_policy(raw_password: str) -> None:
    if len(raw_password) < MIN_PASSWORD_LENGTH:
        raise ValidationFailed(f'Le mot de passe doit contenir au moins {MIN_PASSWORD_LENGTH} caractères')
    if raw_password.isdigit() or raw_password.isalpha():
        raise ValidationFailed('Le mot de passe doit mélanger lettres et chiffres')


def hash_password(raw_password: str) -> str:
    return password_hash.hash(raw_password)


def verify_password(raw_password: str, hashed_password: str) -> tuple[bool, str | None]:
    """Return whether the password matches and, when the stored hash is outdated, its replacement."""
    return password_hash.verify_and_update(raw_password, hashed_password)
