"""Read access to webinar provider connections (owned by the account layer)."""

from app.db.helpers import fetch_all, fetch_one
from app.features.webinar_sync.domain.errors import ConnectionInvalid
from app.features.webinar_sync.domain.models import Connection
from app.infrastructure.observability.logging import get_logger
from app.services.infrastructure.encryption_service import EncryptionError, decrypt_token

logger = get_logger(__name__)


class ConnectionRepository:
    """Loads connections and decrypts their bearer tokens."""

    CONNECTION_COLUMNS = """
        id, user_id, access_token_encrypted, token_expires_at, is_active
    """

    async def load_connection(self, connection_id: str) -> Connection:
        """
        Return a usable connection.

        Raises:
            ConnectionInvalid: missing, inactive, or credentials unreadable
        """
        query = f"SELECT {self.CONNECTION_COLUMNS} FROM webinar_connections WHERE id = %s"
        row = await fetch_one(query, (connection_id,))

        if not row:
            raise ConnectionInvalid(connection_id, "connection not found")
        if not row["is_active"]:
            raise ConnectionInvalid(connection_id, "connection is inactive")

        try:
            access_token = decrypt_token(row["access_token_encrypted"])
        except EncryptionError as e:
            logger.error("Stored provider token unreadable", connection_id=connection_id)
            raise ConnectionInvalid(connection_id, "stored credentials are unreadable") from e

        return Connection(
            id=str(row["id"]),
            user_id=str(row["user_id"]) if row.get("user_id") else None,
            access_token=access_token,
            is_active=True,
            token_expires_at=row.get("token_expires_at"),
        )

    async def list_active_connection_ids(self) -> list[str]:
        rows = await fetch_all(
            "SELECT id FROM webinar_connections WHERE is_active = true ORDER BY created_at"
        )
        return [str(row["id"]) for row in rows]

    async def get_owner_id(self, connection_id: str) -> str | None:
        """User id owning a connection, active or not; None when it does not exist."""
        row = await fetch_one(
            "SELECT user_id FROM webinar_connections WHERE id = %s", (connection_id,)
        )
        if not row or not row.get("user_id"):
            return None
        return str(row["user_id"])
