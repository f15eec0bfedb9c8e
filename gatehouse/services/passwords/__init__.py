from gatehouse.services.passwords.codec import (
    AesSivPasswordCipher,
    PasswordCipher,
    PasswordCodec,
    build_password_codec,
)
from gatehouse.services.passwords.policy import (
    PasswordValidationEvent,
    PasswordValidationHook,
    check_password_strength,
    generate_password,
)

__all__ = [
    "AesSivPasswordCipher",
    "PasswordCipher",
    "PasswordCodec",
    "PasswordValidationEvent",
    "PasswordValidationHook",
    "build_password_codec",
    "check_password_strength",
    "generate_password",
]
