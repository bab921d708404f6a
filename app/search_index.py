"""SQLite FTS5 indexes maintained by triggers on the cached entity tables."""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import Column, Float, Integer, MetaData, String, Table, Text

# Virtual tables live outside ``Base.metadata`` so ``create_all`` never tries
# to emit a plain CREATE TABLE for them.
fts_metadata = MetaData()


@dataclass(frozen=True)
class FullTextIndex:
    """A trigger-maintained FTS5 table mirroring text columns of one kind."""

    name: str
    content_table: str
    columns: tuple[str, ...]
    table: Table

    def create_statements(self) -> list[str]:
        """Return the DDL creating the virtual table and its triggers."""

        column_list = ", ".join(self.columns)
        new_values = ", ".join(f"new.{column}" for column in self.columns)
        insert_columns = f"rowid, id, source_id, {column_list}"
        insert_new = f"new.rowid, new.id, new.source_id, {new_values}"
        return [
            (
                f"CREATE VIRTUAL TABLE IF NOT EXISTS {self.name} USING fts5("
                f"id UNINDEXED, source_id UNINDEXED, {column_list}, "
                "tokenize = 'unicode61 remove_diacritics 2')"
            ),
            (
                f"CREATE TRIGGER IF NOT EXISTS {self.name}_ai "
                f"AFTER INSERT ON {self.content_table} "
                "WHEN new.deleted_at IS NULL BEGIN "
                f"INSERT INTO {self.name}({insert_columns}) VALUES ({insert_new}); "
                "END"
            ),
            (
                f"CREATE TRIGGER IF NOT EXISTS {self.name}_au "
                f"AFTER UPDATE ON {self.content_table} BEGIN "
                f"DELETE FROM {self.name} WHERE rowid = old.rowid; "
                f"INSERT INTO {self.name}({insert_columns}) "
                f"SELECT {insert_new} WHERE new.deleted_at IS NULL; "
                "END"
            ),
            (
                f"CREATE TRIGGER IF NOT EXISTS {self.name}_ad "
                f"AFTER DELETE ON {self.content_table} BEGIN "
                f"DELETE FROM {self.name} WHERE rowid = old.rowid; "
                "END"
            ),
        ]

    def rebuild_statements(self) -> list[str]:
        """Return statements repopulating the index from live rows."""

        column_list = ", ".join(self.columns)
        return [
            f"DELETE FROM {self.name}",
            (
                f"INSERT INTO {self.name}(rowid, id, source_id, {column_list}) "
                f"SELECT rowid, id, source_id, {column_list} "
                f"FROM {self.content_table} WHERE deleted_at IS NULL"
            ),
        ]


def _index(kind: str, content_table: str, *columns: str) -> FullTextIndex:
    name = f"{kind}_fts"
    table = Table(
        name,
        fts_metadata,
        Column("rowid", Integer, primary_key=True),
        Column("id", String),
        Column("source_id", String),
        *(Column(column, Text) for column in columns),
        Column("rank", Float),
    )
    return FullTextIndex(
        name=name, content_table=content_table, columns=columns, table=table
    )


FULL_TEXT_INDEXES: dict[str, FullTextIndex] = {
    "scene": _index("scene", "cached_scenes", "title", "details", "code"),
    "performer": _index("performer", "cached_performers", "name", "alias_list"),
    "studio": _index("studio", "cached_studios", "name"),
    "tag": _index("tag", "cached_tags", "name", "aliases"),
}
