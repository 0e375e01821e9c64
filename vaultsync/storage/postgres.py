from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from vaultsync.logging import get_logger
from vaultsync.storage.errors import ConstraintViolation
from vaultsync.storage.models import (
    Device,
    LoginAttempt,
    RefreshTokenRecord,
    TrustedDeviceToken,
    User,
    utcnow,
)

SCHEMA_PATH = Path(__file__).resolve().parent / "schema.sql"

REQUIRED_TABLES = (
    "users",
    "devices",
    "refresh_tokens",
    "trusted_two_factor_device_tokens",
    "login_attempts_ip",
    "api_rate_limits",
    "used_attachment_download_tokens",
)

_USER_COLUMNS = (
    "id, email, name, master_password_hash, key, private_key, public_key, "
    "kdf_type, kdf_iterations, kdf_memory, kdf_parallelism, security_stamp, "
    "created_at, updated_at"
)


def _row_to_user(row: dict[str, Any]) -> User:
    return User(
        id=str(row["id"]),
        email=row["email"],
        name=row.get("name") or row["email"],
        master_password_hash=row["master_password_hash"],
        key=row["key"],
        private_key=row.get("private_key"),
        public_key=row.get("public_key"),
        kdf_type=int(row.get("kdf_type") or 0),
        kdf_iterations=int(row.get("kdf_iterations") or 0),
        kdf_memory=row.get("kdf_memory"),
        kdf_parallelism=row.get("kdf_parallelism"),
        # Older rows may lack a stamp; the user id is a stable stand-in.
        security_stamp=row.get("security_stamp") or str(row["id"]),
        created_at=row.get("created_at") or utcnow(),
        updated_at=row.get("updated_at") or utcnow(),
    )


def _row_to_device(row: dict[str, Any]) -> Device:
    return Device(
        user_id=str(row["user_id"]),
        device_identifier=row["device_identifier"],
        name=row["name"],
        type=int(row["type"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class PostgresStore:
    """Postgres-backed store; every race-sensitive write is a single statement."""

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        """Ensure the auth tables exist before serving requests."""

        with self._connect() as conn:
            missing_tables = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply {} before starting the server.".format(
                    ", ".join(sorted(missing_tables)), SCHEMA_PATH.name
                )
            )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # users
    def create_first_user(self, user: User) -> bool:
        try:
            with self._connect() as conn:
                # Serialise concurrent registrations so only one can see an empty table.
                conn.execute("LOCK TABLE users IN SHARE ROW EXCLUSIVE MODE")
                result = conn.execute(
                    f"""
                    INSERT INTO users ({_USER_COLUMNS})
                    SELECT %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s
                    WHERE NOT EXISTS (SELECT 1 FROM users)
                    """,
                    (
                        user.id,
                        user.email,
                        user.name,
                        user.master_password_hash,
                        user.key,
                        user.private_key,
                        user.public_key,
                        user.kdf_type,
                        user.kdf_iterations,
                        user.kdf_memory,
                        user.kdf_parallelism,
                        user.security_stamp,
                        user.created_at,
                        user.updated_at,
                    ),
                )
                return result.rowcount > 0
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", field="email")

    def count_users(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT COUNT(*) AS total FROM users").fetchone()
        return int(row["total"]) if row else 0

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM users WHERE email = %s",
                (email.strip().lower(),),
            ).fetchone()
        return _row_to_user(row) if row else None

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM users WHERE id = %s", (user_id,)
            ).fetchone()
        return _row_to_user(row) if row else None

    def set_security_stamp(self, user_id: str, stamp: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE users SET security_stamp = %s, updated_at = now()
                WHERE id = %s
                RETURNING {_USER_COLUMNS}
                """,
                (stamp, user_id),
            ).fetchone()
        return _row_to_user(row) if row else None

    # refresh tokens
    def save_refresh_token(
        self, token_key: str, user_id: str, expires_at: datetime
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO refresh_tokens (token, user_id, expires_at)
                VALUES (%s, %s, %s)
                ON CONFLICT (token) DO UPDATE
                SET user_id = EXCLUDED.user_id, expires_at = EXCLUDED.expires_at
                """,
                (token_key, user_id, expires_at),
            )

    def get_refresh_token(self, token_key: str) -> Optional[RefreshTokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT token, user_id, expires_at FROM refresh_tokens WHERE token = %s",
                (token_key,),
            ).fetchone()
        if not row:
            return None
        return RefreshTokenRecord(
            token_key=row["token"],
            user_id=str(row["user_id"]),
            expires_at=row["expires_at"],
        )

    def delete_refresh_token(self, token_key: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM refresh_tokens WHERE token = %s", (token_key,)
            )
            return result.rowcount > 0

    def delete_expired_refresh_tokens(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM refresh_tokens WHERE expires_at < %s", (now,)
            )
            return result.rowcount

    # trusted two-factor device tokens
    def save_trusted_device_token(
        self,
        token_key: str,
        user_id: str,
        device_identifier: str,
        expires_at: datetime,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM trusted_two_factor_device_tokens WHERE expires_at < %s",
                (utcnow(),),
            )
            conn.execute(
                """
                INSERT INTO trusted_two_factor_device_tokens (token, user_id, device_identifier, expires_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (token) DO UPDATE
                SET user_id = EXCLUDED.user_id,
                    device_identifier = EXCLUDED.device_identifier,
                    expires_at = EXCLUDED.expires_at
                """,
                (token_key, user_id, device_identifier, expires_at),
            )

    def get_trusted_device_token(self, token_key: str) -> Optional[TrustedDeviceToken]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT token, user_id, device_identifier, expires_at
                FROM trusted_two_factor_device_tokens WHERE token = %s
                """,
                (token_key,),
            ).fetchone()
        if not row:
            return None
        return TrustedDeviceToken(
            token_key=row["token"],
            user_id=str(row["user_id"]),
            device_identifier=row["device_identifier"],
            expires_at=row["expires_at"],
        )

    # devices
    def upsert_device(self, device: Device) -> Device:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO devices (user_id, device_identifier, name, type, created_at, updated_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (user_id, device_identifier) DO UPDATE
                SET name = EXCLUDED.name, type = EXCLUDED.type, updated_at = EXCLUDED.updated_at
                RETURNING *
                """,
                (
                    device.user_id,
                    device.device_identifier,
                    device.name,
                    device.type,
                    device.created_at,
                    device.updated_at,
                ),
            ).fetchone()
        return _row_to_device(row) if row else device

    def list_devices(self, user_id: str) -> List[Device]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM devices WHERE user_id = %s ORDER BY updated_at DESC",
                (user_id,),
            ).fetchall()
        return [_row_to_device(row) for row in rows]

    def is_known_device_by_email(self, email: str, device_identifier: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT 1 AS known FROM devices d JOIN users u ON u.id = d.user_id
                WHERE u.email = %s AND d.device_identifier = %s
                LIMIT 1
                """,
                (email.strip().lower(), device_identifier),
            ).fetchone()
        return bool(row)

    # login attempts
    def get_login_attempt(self, client_id: str) -> Optional[LoginAttempt]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT ip, attempts, locked_until, updated_at FROM login_attempts_ip WHERE ip = %s",
                (client_id,),
            ).fetchone()
        if not row:
            return None
        return LoginAttempt(
            client_id=row["ip"],
            attempts=int(row["attempts"]),
            locked_until=row.get("locked_until"),
            updated_at=row["updated_at"],
        )

    def increment_login_attempt(self, client_id: str, now: datetime) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO login_attempts_ip (ip, attempts, locked_until, updated_at)
                VALUES (%s, 1, NULL, %s)
                ON CONFLICT (ip) DO UPDATE
                SET attempts = login_attempts_ip.attempts + 1, updated_at = EXCLUDED.updated_at
                RETURNING attempts
                """,
                (client_id, now),
            ).fetchone()
        return int(row["attempts"]) if row else 1

    def lock_login_attempt(
        self, client_id: str, locked_until: datetime, now: datetime
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE login_attempts_ip SET locked_until = %s, updated_at = %s WHERE ip = %s",
                (locked_until, now, client_id),
            )

    def delete_login_attempt(self, client_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM login_attempts_ip WHERE ip = %s", (client_id,))

    def delete_stale_login_attempts(self, cutoff: datetime, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                DELETE FROM login_attempts_ip
                WHERE updated_at < %s AND (locked_until IS NULL OR locked_until < %s)
                """,
                (cutoff, now),
            )
            return result.rowcount

    # fixed-window counters
    def increment_window_counter(
        self, identifier: str, window_start: int, max_requests: int
    ) -> Optional[int]:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO api_rate_limits (identifier, window_start, count)
                VALUES (%s, %s, 1)
                ON CONFLICT (identifier, window_start) DO UPDATE
                SET count = api_rate_limits.count + 1
                WHERE api_rate_limits.count < %s
                RETURNING count
                """,
                (identifier, window_start, max_requests),
            ).fetchone()
        # No returned row means the WHERE clause blocked the increment.
        return int(row["count"]) if row else None

    def delete_window_counters_before(self, cutoff: int) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM api_rate_limits WHERE window_start < %s", (cutoff,)
            )
            return result.rowcount

    # single-use token ids
    def consume_token_id(self, jti: str, expires_at: int) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                INSERT INTO used_attachment_download_tokens (jti, expires_at)
                VALUES (%s, %s)
                ON CONFLICT (jti) DO NOTHING
                """,
                (jti, expires_at),
            )
            return result.rowcount > 0

    def delete_expired_token_ids(self, now: int) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM used_attachment_download_tokens WHERE expires_at < %s",
                (now,),
            )
            return result.rowcount
