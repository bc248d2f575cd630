import os
import uuid
from contextlib import contextmanager
from typing import Any, Dict, List, Optional, Tuple

import psycopg2
from psycopg2 import pool as pg_pool
from psycopg2.extensions import STATUS_BEGIN
from psycopg2.extras import RealDictCursor

from .months import month_bounds
from .standings import match_fields


_PARTICIPANT_TABLES = {"player": "players", "team": "teams"}
_MATCH_TABLES = {"player": "matches", "team": "team_matches"}

# Writable columns per participant kind (id and created_at are DB-assigned).
_PARTICIPANT_COLUMNS = {
    "player": ("name", "nickname", "emoji"),
    "team": ("name", "emoji", "player1_id", "player2_id"),
}
# Display fields embedded into each match for its two sides.
_DISPLAY_COLUMNS = {
    "player": ("id", "name", "nickname", "emoji"),
    "team": ("id", "name", "emoji"),
}
_SIDE_NAMES = {"player": ("player1", "player2"), "team": ("team1", "team2")}

SCHEMA_SQL = (
    "CREATE EXTENSION IF NOT EXISTS pgcrypto",
    """
    CREATE TABLE IF NOT EXISTS players (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        name VARCHAR(100) NOT NULL,
        nickname VARCHAR(100),
        emoji VARCHAR(16) NOT NULL DEFAULT '👤',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS teams (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        name VARCHAR(100) NOT NULL,
        emoji VARCHAR(16) NOT NULL DEFAULT '👥',
        player1_id UUID REFERENCES players(id) ON DELETE RESTRICT,
        player2_id UUID REFERENCES players(id) ON DELETE RESTRICT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS matches (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        player1_id UUID NOT NULL REFERENCES players(id) ON DELETE RESTRICT,
        player2_id UUID NOT NULL REFERENCES players(id) ON DELETE RESTRICT,
        player1_score INTEGER NOT NULL DEFAULT 0 CHECK (player1_score >= 0),
        player2_score INTEGER NOT NULL DEFAULT 0 CHECK (player2_score >= 0),
        played_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS team_matches (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        team1_id UUID NOT NULL REFERENCES teams(id) ON DELETE RESTRICT,
        team2_id UUID NOT NULL REFERENCES teams(id) ON DELETE RESTRICT,
        team1_score INTEGER NOT NULL DEFAULT 0 CHECK (team1_score >= 0),
        team2_score INTEGER NOT NULL DEFAULT 0 CHECK (team2_score >= 0),
        played_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_matches_played_at ON matches(played_at)",
    "CREATE INDEX IF NOT EXISTS idx_team_matches_played_at ON team_matches(played_at)",
)


class ParticipantInUseError(Exception):
    """Raised when deleting a participant that is still referenced."""

    def __init__(self, kind: str, participant_id: str, match_count: int, team_count: int = 0):
        self.kind = kind
        self.participant_id = participant_id
        self.match_count = match_count
        self.team_count = team_count
        if team_count:
            msg = f"Cannot delete {kind} {participant_id}: member of {team_count} team(s)"
        else:
            msg = f"Cannot delete {kind} {participant_id}: {match_count} match(es) recorded"
        super().__init__(msg)


def _env_int(name: str, default: Optional[int] = None) -> Optional[int]:
    val = os.environ.get(name)
    if val is None:
        return default
    try:
        return int(val)
    except ValueError:
        return default


def _connect_kwargs() -> Dict[str, Any]:
    """Common connection kwargs: connect_timeout + TCP keepalives.

    Defaults:
      - connect_timeout: 10 seconds (overridable via DB_CONNECT_TIMEOUT)
      - keepalives: enabled by default; can be disabled by DB_KEEPALIVES=0
      - keepalive tunables applied if provided (IDLE/INTERVAL/COUNT)
    """
    kwargs: Dict[str, Any] = {}
    ct_env = _env_int("DB_CONNECT_TIMEOUT")
    kwargs["connect_timeout"] = ct_env if ct_env is not None else 10

    ka_env = os.environ.get("DB_KEEPALIVES")
    if ka_env is None:
        kwargs["keepalives"] = 1
    else:
        kwargs["keepalives"] = 0 if str(ka_env).lower() in ("0", "false") else 1

    idle = _env_int("DB_KEEPALIVES_IDLE")
    if idle is not None:
        kwargs["keepalives_idle"] = idle
    interval = _env_int("DB_KEEPALIVES_INTERVAL")
    if interval is not None:
        kwargs["keepalives_interval"] = interval
    count = _env_int("DB_KEEPALIVES_COUNT")
    if count is not None:
        kwargs["keepalives_count"] = count
    return kwargs


def _rollback_quietly(conn) -> None:
    try:
        conn.rollback()
    except psycopg2.Error:
        pass


def _is_uuid(value: Any) -> bool:
    if value is None:
        return False
    try:
        uuid.UUID(str(value))
    except (ValueError, TypeError, AttributeError):
        return False
    return True


def _ts_to_str(val) -> Optional[str]:
    if val is None:
        return None
    # psycopg2 returns timestamptz as an aware datetime
    try:
        return val.isoformat()
    except AttributeError:
        return str(val)


def _participant_from_row(kind: str, row: Dict[str, Any]) -> Dict[str, Any]:
    out = {"id": str(row["id"])}
    for col in _PARTICIPANT_COLUMNS[kind]:
        val = row.get(col)
        if col.endswith("_id") and val is not None:
            val = str(val)
        out[col] = val
    out["created_at"] = _ts_to_str(row.get("created_at"))
    if kind == "team" and "m1_id" in row:
        members = []
        for alias, side in (("m1", "player1"), ("m2", "player2")):
            if row.get(f"{alias}_id") is None:
                out[side] = None
                continue
            member = {col: row.get(f"{alias}_{col}") for col in _DISPLAY_COLUMNS["player"]}
            member["id"] = str(member["id"])
            out[side] = member
            members.append(member)
        out["players"] = members
    return out


def _participant_select(kind: str) -> str:
    """SELECT for one participant kind; teams carry their members' display fields."""
    cols = ", ".join(f"t.{c}" for c in ("id",) + _PARTICIPANT_COLUMNS[kind] + ("created_at",))
    table = _PARTICIPANT_TABLES[kind]
    if kind != "team":
        return f"SELECT {cols} FROM {table} t"
    members = ", ".join(
        f"{alias}.{col} AS {alias}_{col}"
        for alias in ("m1", "m2")
        for col in _DISPLAY_COLUMNS["player"]
    )
    return (
        f"SELECT {cols}, {members} FROM {table} t "
        "LEFT JOIN players m1 ON m1.id = t.player1_id "
        "LEFT JOIN players m2 ON m2.id = t.player2_id"
    )


class Datastore:
    """PostgreSQL access for players, teams and both match kinds.

    One instance owns one connection pool; build it once at startup and pass
    it to whatever needs the database.
    """

    def __init__(self, dsn: str, minconn: int = 1, maxconn: int = 10):
        if not dsn:
            raise RuntimeError("DATABASE_URL not set; configure a PostgreSQL connection string")
        self.dsn = dsn
        self.minconn = minconn
        self.maxconn = maxconn
        self._pool: Optional[pg_pool.AbstractConnectionPool] = None

    def init_pool(self) -> None:
        """Create the connection pool. Safe to call more than once."""
        if self._pool is not None:
            return
        self._pool = pg_pool.ThreadedConnectionPool(
            self.minconn, self.maxconn, dsn=self.dsn, **_connect_kwargs()
        )

    def close(self) -> None:
        if self._pool is not None:
            self._pool.closeall()
            self._pool = None

    def _checkout(self):
        """Take a live connection from the pool, retrying once on a stale one."""
        for _attempt in range(2):
            conn = self._pool.getconn()
            try:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
            except psycopg2.Error:
                try:
                    self._pool.putconn(conn, close=True)
                except psycopg2.Error:
                    pass
                continue
            # Clear implicit transaction started by SELECT when autocommit is off
            if not conn.autocommit:
                _rollback_quietly(conn)
            return conn
        raise psycopg2.OperationalError("Failed to acquire healthy DB connection after retry")

    @contextmanager
    def connection(self):
        """Yield a pooled connection when a pool exists, else a direct one.

        Pooled connections get a ``SELECT 1`` liveness check; a stale one is
        discarded and the checkout retried once.
        """
        if self._pool is None:
            conn = psycopg2.connect(self.dsn, **_connect_kwargs())
            try:
                yield conn
            except Exception:
                _rollback_quietly(conn)
                raise
            finally:
                try:
                    conn.close()
                except psycopg2.Error:
                    pass
            return

        conn = self._checkout()
        try:
            yield conn
        except Exception:
            _rollback_quietly(conn)
            raise
        finally:
            # Never hand an open transaction back to the pool
            if not conn.closed and not conn.autocommit and conn.status == STATUS_BEGIN:
                _rollback_quietly(conn)
            self._pool.putconn(conn)

    # -- schema / health -------------------------------------------------

    def create_schema(self) -> None:
        with self.connection() as conn, conn.cursor() as cur:
            for stmt in SCHEMA_SQL:
                cur.execute(stmt)
            conn.commit()

    def ping(self) -> Dict[str, Any]:
        with self.connection() as conn, conn.cursor() as cur:
            cur.execute("SELECT current_user, current_database(), version()")
            user, db, ver = cur.fetchone()
        return {
            "user": user,
            "database": db,
            "server_version": (ver or "").split("\n")[0],
        }

    # -- participants ----------------------------------------------------

    def list_participants(self, kind: str) -> List[Dict[str, Any]]:
        with self.connection() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(_participant_select(kind) + " ORDER BY t.created_at, t.id")
            return [_participant_from_row(kind, r) for r in cur.fetchall() or []]

    def get_participant(self, kind: str, participant_id: str) -> Optional[Dict[str, Any]]:
        if not _is_uuid(participant_id):
            return None
        with self.connection() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(_participant_select(kind) + " WHERE t.id = %s", (str(participant_id),))
            row = cur.fetchone()
        return _participant_from_row(kind, row) if row else None

    def create_participant(self, kind: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        table = _PARTICIPANT_TABLES[kind]
        writable = _PARTICIPANT_COLUMNS[kind]
        returning = ", ".join(("id",) + writable + ("created_at",))
        placeholders = ", ".join(["%s"] * len(writable))
        with self.connection() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(
                f"INSERT INTO {table} ({', '.join(writable)}) VALUES ({placeholders}) RETURNING {returning}",
                [fields.get(c) for c in writable],
            )
            row = cur.fetchone()
            conn.commit()
        return _participant_from_row(kind, row)

    def update_participant(self, kind: str, participant_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if not _is_uuid(participant_id):
            return None
        table = _PARTICIPANT_TABLES[kind]
        writable = _PARTICIPANT_COLUMNS[kind]
        returning = ", ".join(("id",) + writable + ("created_at",))
        sets = ", ".join(f"{c} = %s" for c in writable)
        params = [fields.get(c) for c in writable] + [str(participant_id)]
        with self.connection() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(f"UPDATE {table} SET {sets} WHERE id = %s RETURNING {returning}", params)
            row = cur.fetchone()
            conn.commit()
        return _participant_from_row(kind, row) if row else None

    def count_matches(self, kind: str, participant_id: str) -> int:
        if not _is_uuid(participant_id):
            return 0
        with self.connection() as conn, conn.cursor() as cur:
            return self._count_matches(cur, kind, str(participant_id))

    def _count_matches(self, cur, kind: str, participant_id: str) -> int:
        fields = match_fields(kind)
        cur.execute(
            f"SELECT COUNT(*) FROM {_MATCH_TABLES[kind]} WHERE {fields['a']} = %s OR {fields['b']} = %s",
            (participant_id, participant_id),
        )
        row = cur.fetchone()
        return int(row[0]) if row else 0

    def delete_participant(self, kind: str, participant_id: str) -> bool:
        """Delete a participant with no matches; ``False`` if it does not exist.

        Raises :class:`ParticipantInUseError` if any match references it, or
        (for players) if a team lists it as a member.
        """
        if not _is_uuid(participant_id):
            return False
        pid = str(participant_id)
        with self.connection() as conn, conn.cursor() as cur:
            match_count = self._count_matches(cur, kind, pid)
            team_count = 0
            if kind == "player":
                cur.execute(
                    "SELECT COUNT(*) FROM teams WHERE player1_id = %s OR player2_id = %s",
                    (pid, pid),
                )
                row = cur.fetchone()
                team_count = int(row[0]) if row else 0
            if match_count or team_count:
                raise ParticipantInUseError(kind, pid, match_count, team_count)
            cur.execute(f"DELETE FROM {_PARTICIPANT_TABLES[kind]} WHERE id = %s", (pid,))
            deleted = cur.rowcount > 0
            conn.commit()
        return deleted

    # -- matches ---------------------------------------------------------

    def _match_select(self, kind: str) -> str:
        fields = match_fields(kind)
        ptable = _PARTICIPANT_TABLES[kind]
        display = []
        for alias in ("a", "b"):
            for col in _DISPLAY_COLUMNS[kind]:
                display.append(f"{alias}.{col} AS {alias}_{col}")
        return (
            f"SELECT m.id, m.{fields['a']}, m.{fields['b']}, m.{fields['score_a']}, m.{fields['score_b']}, "
            f"m.played_at, m.created_at, {', '.join(display)} "
            f"FROM {_MATCH_TABLES[kind]} m "
            f"LEFT JOIN {ptable} a ON a.id = m.{fields['a']} "
            f"LEFT JOIN {ptable} b ON b.id = m.{fields['b']}"
        )

    def _match_from_row(self, kind: str, row: Dict[str, Any]) -> Dict[str, Any]:
        fields = match_fields(kind)
        out: Dict[str, Any] = {
            "id": str(row["id"]),
            fields["a"]: str(row[fields["a"]]),
            fields["b"]: str(row[fields["b"]]),
            fields["score_a"]: row[fields["score_a"]],
            fields["score_b"]: row[fields["score_b"]],
            "played_at": _ts_to_str(row.get("played_at")),
            "created_at": _ts_to_str(row.get("created_at")),
        }
        for alias, side in zip(("a", "b"), _SIDE_NAMES[kind]):
            if row.get(f"{alias}_id") is None:
                out[side] = None
                continue
            embedded = {col: row.get(f"{alias}_{col}") for col in _DISPLAY_COLUMNS[kind]}
            embedded["id"] = str(embedded["id"])
            out[side] = embedded
        return out

    def list_matches(
        self,
        kind: str,
        side_a: Optional[str] = None,
        side_b: Optional[str] = None,
        participant: Optional[str] = None,
        month: Optional[Tuple[int, int]] = None,
    ) -> List[Dict[str, Any]]:
        """Return matches newest first, optionally filtered.

        ``side_a``/``side_b`` match one column each; ``participant`` matches
        either side; ``month`` is a ``(year, month)`` pair bucketed in UTC.
        """
        fields = match_fields(kind)
        where: List[str] = []
        params: List[Any] = []
        for value in (side_a, side_b, participant):
            if value is not None and not _is_uuid(value):
                return []
        if side_a is not None:
            where.append(f"m.{fields['a']} = %s")
            params.append(str(side_a))
        if side_b is not None:
            where.append(f"m.{fields['b']} = %s")
            params.append(str(side_b))
        if participant is not None:
            where.append(f"(m.{fields['a']} = %s OR m.{fields['b']} = %s)")
            params.extend([str(participant), str(participant)])
        if month is not None:
            start, end = month_bounds(*month)
            where.append("m.played_at >= %s AND m.played_at < %s")
            params.extend([start, end])
        sql = self._match_select(kind)
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY m.played_at DESC, m.id"
        with self.connection() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(sql, params)
            return [self._match_from_row(kind, r) for r in cur.fetchall() or []]

    def get_match(self, kind: str, match_id: str) -> Optional[Dict[str, Any]]:
        if not _is_uuid(match_id):
            return None
        sql = self._match_select(kind) + " WHERE m.id = %s"
        with self.connection() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(sql, (str(match_id),))
            row = cur.fetchone()
        return self._match_from_row(kind, row) if row else None

    def _match_values(self, kind: str, match: Dict[str, Any]) -> Tuple[List[str], List[Any]]:
        fields = match_fields(kind)
        cols = [fields["a"], fields["b"], fields["score_a"], fields["score_b"], "played_at"]
        return cols, [match.get(c) for c in cols]

    def create_match(self, kind: str, match: Dict[str, Any]) -> Dict[str, Any]:
        cols, values = self._match_values(kind, match)
        with self.connection() as conn, conn.cursor() as cur:
            cur.execute(
                f"INSERT INTO {_MATCH_TABLES[kind]} ({', '.join(cols)}) "
                f"VALUES ({', '.join(['%s'] * len(cols))}) RETURNING id",
                values,
            )
            new_id = str(cur.fetchone()[0])
            conn.commit()
        return self.get_match(kind, new_id)  # type: ignore[return-value]

    def update_match(self, kind: str, match_id: str, match: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if not _is_uuid(match_id):
            return None
        cols, values = self._match_values(kind, match)
        sets = ", ".join(f"{c} = %s" for c in cols)
        with self.connection() as conn, conn.cursor() as cur:
            cur.execute(
                f"UPDATE {_MATCH_TABLES[kind]} SET {sets} WHERE id = %s",
                values + [str(match_id)],
            )
            updated = cur.rowcount > 0
            conn.commit()
        return self.get_match(kind, str(match_id)) if updated else None

    def delete_match(self, kind: str, match_id: str) -> bool:
        if not _is_uuid(match_id):
            return False
        with self.connection() as conn, conn.cursor() as cur:
            cur.execute(f"DELETE FROM {_MATCH_TABLES[kind]} WHERE id = %s", (str(match_id),))
            deleted = cur.rowcount > 0
            conn.commit()
        return deleted
