import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv
from sqlalchemy.engine import URL

# Load environment variables from .env file
load_dotenv()

DEFAULT_SCHEMA = "mimiciii"


def db_url(env_var: str = "DATABASE_URL") -> str:
    url = os.getenv(env_var)
    if not url:
        raise RuntimeError(f"{env_var} not set")
    return url


@dataclass(frozen=True)
class ConnectionConfig:
    """Connection options: host, port, dbname, schema, user and password."""

    host: str = "localhost"
    port: int = 5432
    dbname: str = "mimic"
    schema: str = DEFAULT_SCHEMA
    user: Optional[str] = None
    password: Optional[str] = None
    driver: str = "postgresql+psycopg2"

    @classmethod
    def from_env(cls, prefix: str = "MIMIC_") -> "ConnectionConfig":
        """Read ``MIMIC_HOST``, ``MIMIC_PORT``, ... falling back to the defaults."""

        def get(name: str, default):
            value = os.getenv(prefix + name.upper())
            return default if value in (None, "") else value

        port = get("port", cls.port)
        try:
            port = int(port)
        except ValueError:
            raise RuntimeError(f"{prefix}PORT must be an integer, got {port!r}")

        return cls(
            host=get("host", cls.host),
            port=port,
            dbname=get("dbname", cls.dbname),
            schema=get("schema", cls.schema),
            user=get("user", None),
            password=get("password", None),
        )

    def url(self) -> URL:
        return URL.create(
            self.driver,
            username=self.user,
            password=self.password,
            host=self.host,
            port=self.port,
            database=self.dbname,
        )
