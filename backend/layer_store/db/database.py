"""Database helpers and repositories for user layer features."""

from __future__ import annotations

import contextlib
import dataclasses
import datetime
import itertools
import json
import threading
from typing import TYPE_CHECKING, Any, Protocol, cast

import psycopg2
import psycopg2.errors
import psycopg2.extensions
import psycopg2.extras
import psycopg2.pool
from loguru import logger
from psycopg2 import sql

from layer_store.core import errors
from layer_store.db import models as db_models

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping, Sequence

    from layer_store.core import config


def _cast[T](value: object, dtype: type[T]) -> T | None:  # type: ignore[misc]
    """Cast a value to a specific type, returning None if value is None."""
    if value is None:
        return None

    return cast(T, value)


def group_key(feature: db_models.Feature) -> str:
    """Return the key features are grouped under when assembling layers.

    Rows written before layers were split into features carry no
    ``parent_layer_id``; each such row forms a layer of its own, keyed by
    its ``id``.
    """
    if feature.parent_layer_id:
        return feature.parent_layer_id
    return str(feature.id)


class LayerRepositoryProtocol(Protocol):
    """Protocol interface for storing user layer features and history.

    Every mutating method runs as one atomic unit together with the
    history entries it writes. Implementations raise
    ``errors.DuplicateLayerName`` when a write would give two layers of
    the same (project, user) the same name.
    """

    def create_features(
        self,
        drafts: Sequence[db_models.FeatureDraft],
        modified_by: int,
    ) -> list[db_models.Feature]: ...

    def list_features(
        self,
        project_number: str,
        user_id: int,
    ) -> list[db_models.Feature]: ...

    def get_feature(
        self,
        feature_id: int,
        project_number: str,
        user_id: int,
    ) -> db_models.Feature | None: ...

    def update_feature(
        self,
        feature_id: int,
        project_number: str,
        user_id: int,
        changes: Mapping[str, Any],
        modified_by: int,
    ) -> db_models.Feature | None: ...

    def delete_features(
        self,
        project_number: str,
        user_id: int,
        modified_by: int,
        feature_id: int | None = None,
        parent_layer_id: str | None = None,
    ) -> list[int]: ...

    def history(self, feature_id: int) -> list[db_models.HistoryEntry]: ...

    def close(self) -> None: ...


class InMemoryLayerRepository(LayerRepositoryProtocol):
    """Simple in-memory store for tests and local development.

    Stores features and history in process memory. Data is lost when the
    process exits. A lock serializes mutations so that each call behaves
    like a single transaction.
    """

    def __init__(self) -> None:
        """Initialize an empty in-memory repository."""
        self._features: dict[int, db_models.Feature] = {}
        self._history: list[db_models.HistoryEntry] = []
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    @property
    def history_entries(self) -> list[db_models.HistoryEntry]:
        """All history entries in write order."""
        return list(self._history)

    def _name_taken(
        self,
        project_number: str,
        user_id: int,
        layer_name: str,
        layer_key: str,
        exclude_id: int | None = None,
    ) -> bool:
        """Return True if another layer already uses ``layer_name``.

        Layers are compared by ``group_key``, so a legacy row without a
        parent is a layer of its own.
        """
        for feature in self._features.values():
            if (
                feature.project_number != project_number
                or feature.user_id != user_id
                or feature.layer_name != layer_name
                or feature.id == exclude_id
            ):
                continue
            if group_key(feature) != layer_key:
                return True
        return False

    def create_features(
        self,
        drafts: Sequence[db_models.FeatureDraft],
        modified_by: int,
    ) -> list[db_models.Feature]:
        with self._lock:
            for draft in drafts:
                if self._name_taken(
                    draft.project_number,
                    draft.user_id,
                    draft.layer_name,
                    draft.parent_layer_id,
                ):
                    raise errors.DuplicateLayerName()

            now = datetime.datetime.now(tz=datetime.UTC)
            created: list[db_models.Feature] = []
            pending_history: list[db_models.HistoryEntry] = []
            for draft in drafts:
                feature = db_models.Feature.from_draft(next(self._ids), draft, now)
                created.append(feature)
                pending_history.append(
                    db_models.HistoryEntry.snapshot(feature, "create", modified_by)
                )

            for feature in created:
                self._features[feature.id] = feature
            self._history.extend(pending_history)
            return [dataclasses.replace(feature) for feature in created]

    def list_features(
        self,
        project_number: str,
        user_id: int,
    ) -> list[db_models.Feature]:
        rows = [
            feature
            for feature in self._features.values()
            if feature.project_number == project_number
            and feature.user_id == user_id
        ]
        # Mirrors ORDER BY parent_layer_id, created_at, id (NULLs last).
        rows.sort(
            key=lambda f: (
                f.parent_layer_id is None,
                f.parent_layer_id or "",
                f.created_at,
                f.id,
            )
        )
        return [dataclasses.replace(feature) for feature in rows]

    def get_feature(
        self,
        feature_id: int,
        project_number: str,
        user_id: int,
    ) -> db_models.Feature | None:
        feature = self._features.get(feature_id)
        if (
            feature is None
            or feature.project_number != project_number
            or feature.user_id != user_id
        ):
            return None
        return dataclasses.replace(feature)

    def update_feature(
        self,
        feature_id: int,
        project_number: str,
        user_id: int,
        changes: Mapping[str, Any],
        modified_by: int,
    ) -> db_models.Feature | None:
        with self._lock:
            existing = self.get_feature(feature_id, project_number, user_id)
            if existing is None:
                return None

            if "layer_name" in changes and self._name_taken(
                project_number,
                user_id,
                changes["layer_name"],
                group_key(existing),
                exclude_id=feature_id,
            ):
                raise errors.DuplicateLayerName()

            self._history.append(
                db_models.HistoryEntry.snapshot(existing, "update", modified_by)
            )
            updated = dataclasses.replace(
                existing,
                updated_at=datetime.datetime.now(tz=datetime.UTC),
                **dict(changes),
            )
            self._features[feature_id] = updated
            return dataclasses.replace(updated)

    def delete_features(
        self,
        project_number: str,
        user_id: int,
        modified_by: int,
        feature_id: int | None = None,
        parent_layer_id: str | None = None,
    ) -> list[int]:
        with self._lock:
            matched = [
                feature
                for feature in self._features.values()
                if feature.project_number == project_number
                and feature.user_id == user_id
                and (
                    feature.parent_layer_id == parent_layer_id
                    if parent_layer_id is not None
                    else feature.id == feature_id
                )
            ]
            for feature in matched:
                self._history.append(
                    db_models.HistoryEntry.snapshot(feature, "delete", modified_by)
                )
            for feature in matched:
                del self._features[feature.id]
            return [feature.id for feature in matched]

    def history(self, feature_id: int) -> list[db_models.HistoryEntry]:
        return [entry for entry in self._history if entry.layer_id == feature_id]

    def close(self) -> None:
        """Nothing to release."""


class Database:
    """Thread-safe psycopg2 connection pool.

    Connections are borrowed for the duration of one ``cursor()`` block,
    which is also one transaction: it commits when the block exits cleanly
    and rolls back when it raises. The connection goes back to the pool
    on every exit path.
    """

    def __init__(self, settings: config.Settings) -> None:
        """Open the pool.

        Args:
            settings: Application settings containing the connection URL
                and pool bounds.
        """
        self._pool = psycopg2.pool.ThreadedConnectionPool(
            settings.db_pool_min_size,
            settings.db_pool_max_size,
            settings.database_url,
        )

    @contextlib.contextmanager
    def cursor(self) -> Iterator[psycopg2.extras.RealDictCursor]:
        conn = self._pool.getconn()
        try:
            with conn, conn.cursor(
                cursor_factory=psycopg2.extras.RealDictCursor
            ) as cur:
                yield cur
        finally:
            self._pool.putconn(conn)

    def close(self) -> None:
        self._pool.closeall()


class PostgresLayerRepository(LayerRepositoryProtocol):
    """PostgreSQL/PostGIS-backed repository for user layer features.

    Persists features to ``user_layers`` and audit snapshots to
    ``user_layers_history``. Creates both tables and the required
    extensions on initialization. Layer name uniqueness is enforced by an
    exclusion constraint: rows of the same (project, user) may share a
    name only when they share a ``parent_layer_id``.
    """

    CREATE_TABLE_SQL = """
    CREATE TABLE IF NOT EXISTS user_layers (
      id BIGSERIAL PRIMARY KEY,
      parent_layer_id TEXT,
      project_number TEXT NOT NULL,
      user_id INTEGER NOT NULL,
      layer_name TEXT NOT NULL,
      layer_type TEXT NOT NULL CHECK (
        layer_type IN ('iso-concentration', 'potentiometric', 'utilities')
      ),
      geometry GEOMETRY NOT NULL,
      properties JSONB NOT NULL DEFAULT '{}'::jsonb,
      is_visible BOOLEAN NOT NULL DEFAULT true,
      z_index INTEGER NOT NULL DEFAULT 0,
      layer_type_group TEXT,
      crs TEXT NOT NULL DEFAULT 'EPSG:4326',
      shared_with JSONB NOT NULL DEFAULT '{}'::jsonb,
      created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
      updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
      CONSTRAINT user_layers_unique_name EXCLUDE USING gist (
        project_number WITH =,
        user_id WITH =,
        layer_name WITH =,
        (COALESCE(parent_layer_id, id::text)) WITH <>
      )
    );
    CREATE INDEX IF NOT EXISTS user_layers_owner_idx
      ON user_layers (project_number, user_id, parent_layer_id, created_at);
    CREATE TABLE IF NOT EXISTS user_layers_history (
      id BIGSERIAL PRIMARY KEY,
      layer_id BIGINT NOT NULL,
      parent_layer_id TEXT,
      project_number TEXT NOT NULL,
      user_id INTEGER NOT NULL,
      layer_name TEXT NOT NULL,
      layer_type TEXT NOT NULL,
      geometry GEOMETRY NOT NULL,
      properties JSONB,
      is_visible BOOLEAN,
      z_index INTEGER,
      layer_type_group TEXT,
      crs TEXT,
      shared_with JSONB,
      modified_at TIMESTAMPTZ NOT NULL DEFAULT now(),
      modified_by INTEGER NOT NULL,
      action TEXT NOT NULL CHECK (action IN ('create', 'update', 'delete'))
    );
    CREATE INDEX IF NOT EXISTS user_layers_history_layer_idx
      ON user_layers_history (layer_id, modified_at);
    """

    SELECT_SQL = "SELECT *, ST_AsGeoJSON(geometry) AS geojson FROM user_layers"

    def __init__(self, db: Database) -> None:
        """Initialize repository on top of a connection pool.

        Args:
            db: Pool the repository borrows connections from. The
                repository takes ownership and closes it in ``close()``.
        """
        self.db = db
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        """Ensure PostGIS, btree_gist and both tables exist."""
        with self.db.cursor() as cur:
            cur.execute("CREATE EXTENSION IF NOT EXISTS postgis;")
            cur.execute("CREATE EXTENSION IF NOT EXISTS btree_gist;")
            cur.execute(self.CREATE_TABLE_SQL)

    @contextlib.contextmanager
    def _transaction(self) -> Iterator[psycopg2.extras.RealDictCursor]:
        """Run a block in one transaction, mapping name conflicts."""
        try:
            with self.db.cursor() as cur:
                yield cur
        except (
            psycopg2.errors.UniqueViolation,
            psycopg2.errors.ExclusionViolation,
        ) as exc:
            logger.warning("Layer name constraint violated: {}", exc.pgerror)
            raise errors.DuplicateLayerName() from exc

    def _insert_history(
        self,
        cur: psycopg2.extensions.cursor,
        feature: db_models.Feature,
        action: db_models.HistoryAction,
        modified_by: int,
    ) -> None:
        entry = db_models.HistoryEntry.snapshot(feature, action, modified_by)
        cur.execute(
            """
            INSERT INTO user_layers_history (
                layer_id, parent_layer_id, project_number, user_id,
                layer_name, layer_type, geometry, properties, is_visible,
                z_index, layer_type_group, crs, shared_with, modified_at,
                modified_by, action
            ) VALUES (%(layer_id)s, %(parent_layer_id)s, %(project_number)s,
                %(user_id)s, %(layer_name)s, %(layer_type)s,
                ST_GeomFromGeoJSON(%(geometry)s), %(properties)s,
                %(is_visible)s, %(z_index)s, %(layer_type_group)s, %(crs)s,
                %(shared_with)s, CURRENT_TIMESTAMP, %(modified_by)s,
                %(action)s)
            """,
            self._history_to_row(entry),
        )

    def create_features(
        self,
        drafts: Sequence[db_models.FeatureDraft],
        modified_by: int,
    ) -> list[db_models.Feature]:
        created: list[db_models.Feature] = []
        with self._transaction() as cur:
            for draft in drafts:
                cur.execute(
                    """
                    INSERT INTO user_layers (
                        parent_layer_id, project_number, user_id, layer_name,
                        layer_type, geometry, properties, is_visible, z_index,
                        layer_type_group, crs, shared_with
                    ) VALUES (%(parent_layer_id)s, %(project_number)s,
                        %(user_id)s, %(layer_name)s, %(layer_type)s,
                        ST_GeomFromGeoJSON(%(geometry)s), %(properties)s,
                        %(is_visible)s, %(z_index)s, %(layer_type_group)s,
                        %(crs)s, %(shared_with)s)
                    RETURNING *, ST_AsGeoJSON(geometry) AS geojson
                    """,
                    self._to_row(draft),
                )
                feature = self._from_row(cast(dict[str, object], cur.fetchone()))
                self._insert_history(cur, feature, "create", modified_by)
                created.append(feature)
        return created

    def list_features(
        self,
        project_number: str,
        user_id: int,
    ) -> list[db_models.Feature]:
        with self.db.cursor() as cur:
            cur.execute(
                self.SELECT_SQL
                + """
                WHERE project_number = %s AND user_id = %s
                ORDER BY parent_layer_id, created_at, id
                """,
                (project_number, user_id),
            )
            return [
                self._from_row(cast(dict[str, object], row))
                for row in cur.fetchall()
            ]

    def get_feature(
        self,
        feature_id: int,
        project_number: str,
        user_id: int,
    ) -> db_models.Feature | None:
        with self.db.cursor() as cur:
            cur.execute(
                self.SELECT_SQL
                + " WHERE id = %s AND user_id = %s AND project_number = %s",
                (feature_id, user_id, project_number),
            )
            row = cur.fetchone()
            if row is None:
                return None
            else:
                return self._from_row(cast(dict[str, object], row))

    def update_feature(
        self,
        feature_id: int,
        project_number: str,
        user_id: int,
        changes: Mapping[str, Any],
        modified_by: int,
    ) -> db_models.Feature | None:
        with self._transaction() as cur:
            cur.execute(
                self.SELECT_SQL
                + """
                WHERE id = %s AND user_id = %s AND project_number = %s
                FOR UPDATE
                """,
                (feature_id, user_id, project_number),
            )
            row = cur.fetchone()
            if row is None:
                return None
            existing = self._from_row(cast(dict[str, object], row))

            if "layer_name" in changes:
                cur.execute(
                    """
                    SELECT 1 FROM user_layers
                    WHERE project_number = %(project_number)s
                      AND user_id = %(user_id)s
                      AND layer_name = %(layer_name)s
                      AND id <> %(id)s
                      AND COALESCE(parent_layer_id, id::text)
                          <> %(layer_key)s
                    LIMIT 1
                    """,
                    {
                        "project_number": project_number,
                        "user_id": user_id,
                        "layer_name": changes["layer_name"],
                        "id": feature_id,
                        "layer_key": group_key(existing),
                    },
                )
                if cur.fetchone() is not None:
                    raise errors.DuplicateLayerName()

            self._insert_history(cur, existing, "update", modified_by)

            assignments, values = self._set_clause(changes)
            cur.execute(
                sql.SQL(
                    """
                    UPDATE user_layers SET {assignments}
                    WHERE id = %s AND user_id = %s AND project_number = %s
                    RETURNING *, ST_AsGeoJSON(geometry) AS geojson
                    """
                ).format(assignments=assignments),
                [*values, feature_id, user_id, project_number],
            )
            updated = cur.fetchone()
            if updated is None:
                return None
            return self._from_row(cast(dict[str, object], updated))

    def delete_features(
        self,
        project_number: str,
        user_id: int,
        modified_by: int,
        feature_id: int | None = None,
        parent_layer_id: str | None = None,
    ) -> list[int]:
        if parent_layer_id is not None:
            scope_sql = "parent_layer_id = %s"
            scope_value: object = parent_layer_id
        else:
            scope_sql = "id = %s"
            scope_value = feature_id

        with self._transaction() as cur:
            cur.execute(
                self.SELECT_SQL
                + f"""
                WHERE {scope_sql} AND user_id = %s AND project_number = %s
                ORDER BY created_at, id
                FOR UPDATE
                """,
                (scope_value, user_id, project_number),
            )
            matched = [
                self._from_row(cast(dict[str, object], row))
                for row in cur.fetchall()
            ]
            if not matched:
                return []

            for feature in matched:
                self._insert_history(cur, feature, "delete", modified_by)

            cur.execute(
                "DELETE FROM user_layers WHERE id = ANY(%s) RETURNING id",
                ([feature.id for feature in matched],),
            )
            deleted = {int(row["id"]) for row in cur.fetchall()}
            return [feature.id for feature in matched if feature.id in deleted]

    def history(self, feature_id: int) -> list[db_models.HistoryEntry]:
        with self.db.cursor() as cur:
            cur.execute(
                """
                SELECT *, ST_AsGeoJSON(geometry) AS geojson
                FROM user_layers_history
                WHERE layer_id = %s
                ORDER BY modified_at, id
                """,
                (feature_id,),
            )
            return [
                self._history_from_row(cast(dict[str, object], row))
                for row in cur.fetchall()
            ]

    def close(self) -> None:
        self.db.close()

    @staticmethod
    def _set_clause(
        changes: Mapping[str, Any],
    ) -> tuple[sql.Composed, list[object]]:
        """Build the SET list of an UPDATE from the changed fields.

        ``updated_at`` is always refreshed, so the clause is never empty.
        """
        parts: list[sql.Composable] = []
        values: list[object] = []
        for field in db_models.MUTABLE_FIELDS:
            if field not in changes:
                continue
            value = changes[field]
            if field == "geometry":
                parts.append(sql.SQL("geometry = ST_GeomFromGeoJSON(%s)"))
                values.append(json.dumps(value))
            elif field in ("properties", "shared_with"):
                parts.append(sql.SQL("{} = %s").format(sql.Identifier(field)))
                values.append(psycopg2.extras.Json(value))
            else:
                parts.append(sql.SQL("{} = %s").format(sql.Identifier(field)))
                values.append(value)
        parts.append(sql.SQL("updated_at = CURRENT_TIMESTAMP"))
        return sql.SQL(", ").join(parts), values

    @staticmethod
    def _to_row(draft: db_models.FeatureDraft) -> dict[str, object]:
        """Convert a FeatureDraft to a parameter dictionary for INSERT.

        Args:
            draft: Feature to convert.

        Returns:
            Dictionary suitable for parameterized SQL insertion. JSON
            columns are wrapped for psycopg2 adaptation.
        """
        return {
            "parent_layer_id": draft.parent_layer_id,
            "project_number": draft.project_number,
            "user_id": draft.user_id,
            "layer_name": draft.layer_name,
            "layer_type": draft.layer_type,
            "geometry": json.dumps(draft.geometry),
            "properties": psycopg2.extras.Json(draft.properties),
            "is_visible": draft.is_visible,
            "z_index": draft.z_index,
            "layer_type_group": draft.layer_type_group,
            "crs": draft.crs,
            "shared_with": psycopg2.extras.Json(draft.shared_with),
        }

    @staticmethod
    def _history_to_row(entry: db_models.HistoryEntry) -> dict[str, object]:
        row: dict[str, object] = dataclasses.asdict(entry)
        row["geometry"] = json.dumps(entry.geometry)
        row["properties"] = psycopg2.extras.Json(entry.properties)
        row["shared_with"] = psycopg2.extras.Json(entry.shared_with)
        return row

    @staticmethod
    def _geometry(row: dict[str, object]) -> db_models.GeoJSON:
        geojson = row.get("geojson")
        if isinstance(geojson, str):
            return cast(db_models.GeoJSON, json.loads(geojson))
        return cast(db_models.GeoJSON, geojson or {})

    @staticmethod
    def _from_row(row: dict[str, object]) -> db_models.Feature:
        """Convert a database row dictionary to a Feature.

        Args:
            row: Dictionary from a query that selected
                ``ST_AsGeoJSON(geometry) AS geojson``.

        Returns:
            Feature with its geometry decoded from GeoJSON.
        """
        now = datetime.datetime.now(datetime.UTC)
        created_at = _cast(row.get("created_at"), datetime.datetime) or now
        updated_at = _cast(row.get("updated_at"), datetime.datetime) or created_at
        z_index_value = row.get("z_index")
        z_index = int(cast(int, z_index_value)) if z_index_value is not None else 0
        visible_value = row.get("is_visible")

        return db_models.Feature(
            id=int(cast(int, row["id"])),
            parent_layer_id=_cast(row.get("parent_layer_id"), str),
            project_number=str(row["project_number"]),
            user_id=int(cast(int, row["user_id"])),
            layer_name=str(row["layer_name"]),
            layer_type=str(row["layer_type"]),
            geometry=PostgresLayerRepository._geometry(row),
            properties=_cast(row.get("properties"), dict) or {},
            is_visible=True if visible_value is None else bool(visible_value),
            z_index=z_index,
            layer_type_group=_cast(row.get("layer_type_group"), str),
            crs=_cast(row.get("crs"), str) or db_models.DEFAULT_CRS,
            shared_with=_cast(row.get("shared_with"), dict) or {},
            created_at=created_at,
            updated_at=updated_at,
        )

    @staticmethod
    def _history_from_row(row: dict[str, object]) -> db_models.HistoryEntry:
        feature = PostgresLayerRepository._from_row(
            {**row, "id": row["layer_id"]}
        )
        entry = db_models.HistoryEntry.snapshot(
            feature,
            cast(db_models.HistoryAction, str(row["action"])),
            int(cast(int, row["modified_by"])),
        )
        modified_at = _cast(row.get("modified_at"), datetime.datetime)
        if modified_at is None:
            return entry
        return dataclasses.replace(entry, modified_at=modified_at)


def get_layer_repository(settings: config.Settings) -> LayerRepositoryProtocol:
    """Factory function to create a layer repository.

    Args:
        settings: Application settings selecting the backend and holding
            the database connection parameters.

    Returns:
        InMemoryLayerRepository when ``repository_backend`` is "memory",
        otherwise a PostgresLayerRepository over a fresh connection pool.
    """
    if settings.repository_backend == "memory":
        return InMemoryLayerRepository()
    return PostgresLayerRepository(Database(settings))
