from typing import Optional
from cryptography.fernet import Fernet, InvalidToken
from .errors import ConfigurationError


class SecretBox:
    """Cifrado simétrico (Fernet) del certificado, la clave y la passphrase en BD."""

    def __init__(self, key: Optional[str]):
        if not key:
            raise ConfigurationError("Falta ENCRYPTION_KEY para cifrar credenciales fiscales")
        try:
            self._fernet = Fernet(key.encode() if isinstance(key, str) else key)
        except ValueError as e:
            raise ConfigurationError(f"ENCRYPTION_KEY inválida: {e}") from e

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode()

    def encrypt(self, text: Optional[str]) -> Optional[str]:
        if text is None:
            return None
        return self._fernet.encrypt(text.encode()).decode()

    def decrypt(self, token: Optional[str]) -> Optional[str]:
        if token is None:
            return None
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except InvalidToken as e:
            raise ConfigurationError("No se pudo descifrar la credencial fiscal guardada") from e
