from typing import Optional
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Base de datos
    DB_HOST: str = "localhost"
    DB_PORT: int = 5432
    DB_USER: str = "arca"
    DB_PASS: str = "arca"
    DB_NAME: str = "arca_fiscal"
    DB_SSLMODE: str = "disable"
    DB_POOL_MAX: int = 10

    # Clave Fernet para cifrar certificado, clave privada y passphrase
    ENCRYPTION_KEY: Optional[str] = None

    # WSAA
    WSAA_SERVICE: str = "wsfe"
    WSAA_WSDL_HOMO: str = "https://wsaahomo.afip.gov.ar/ws/services/LoginCms?WSDL"
    WSAA_WSDL_PROD: str = "https://wsaa.afip.gov.ar/ws/services/LoginCms?WSDL"
    TICKET_SAFETY_MARGIN_MINUTES: int = 10

    # WSFEv1
    WSFE_WSDL_HOMO: str = "https://wswhomo.afip.gov.ar/wsfev1/service.asmx?WSDL"
    WSFE_WSDL_PROD: str = "https://servicios1.afip.gov.ar/wsfev1/service.asmx?WSDL"

    HTTP_TIMEOUT: int = 30
    QR_BASE_URL: str = "https://www.afip.gob.ar/fe/qr/?p="

    # "memory" = lock por proceso / "postgres" = advisory lock compartido
    LOCK_BACKEND: str = "memory"

    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: str = "*"

    @field_validator("LOCK_BACKEND")
    @classmethod
    def validate_lock_backend(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in ("memory", "postgres"):
            raise ValueError("LOCK_BACKEND debe ser 'memory' o 'postgres'")
        return v

    def wsaa_wsdl(self, environment: str) -> str:
        return self.WSAA_WSDL_PROD if environment == "PROD" else self.WSAA_WSDL_HOMO

    def wsfe_wsdl(self, environment: str) -> str:
        return self.WSFE_WSDL_PROD if environment == "PROD" else self.WSFE_WSDL_HOMO


settings = Settings()
