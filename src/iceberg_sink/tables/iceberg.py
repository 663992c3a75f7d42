"""Apache Iceberg table service backed by pyiceberg."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

import structlog

from iceberg_sink.channel.events import (
    DataFileDescriptor,
    DeleteFileDescriptor,
    TableName,
)
from iceberg_sink.config.models import CatalogConfig
from iceberg_sink.tables.base import (
    CommitResult,
    Conflict,
    Failure,
    StagedTransaction,
    Success,
)

logger = structlog.get_logger()


class IcebergTableService:
    """Commits coordinated file sets to Iceberg tables through a catalog.

    Data files are registered with ``add_files``; the files must already be
    Parquet files under the table's location.  pyiceberg cannot register
    externally written delete files, so a stage carrying any is reported as
    a :class:`Failure` at commit time.
    """

    def __init__(self, config: CatalogConfig) -> None:
        self._config = config
        self._catalog: Any = None
        self._tables: dict[TableName, Any] = {}

    def start(self) -> None:
        try:
            from pyiceberg.catalog import load_catalog
        except ImportError:
            msg = (
                "pyiceberg is required for the Iceberg table service. "
                "Install it with: pip install pyiceberg pyarrow"
            )
            raise ImportError(msg) from None

        self._catalog = load_catalog(
            self._config.catalog_name, **self._config.catalog_properties()
        )
        logger.info("iceberg_tables.catalog_loaded", catalog=self._config.catalog_name)

    def stop(self) -> None:
        self._tables.clear()
        self._catalog = None

    def _load(self, table_name: TableName) -> Any:
        if self._catalog is None:
            msg = "IcebergTableService.start() must be called first"
            raise RuntimeError(msg)
        table = self._tables.get(table_name)
        if table is None:
            table = self._catalog.load_table(table_name.identifier)
            self._tables[table_name] = table
            logger.info("iceberg_tables.table_loaded", table=str(table_name))
        else:
            table.refresh()
        return table

    def stage(
        self,
        table_name: TableName,
        data_files: Sequence[DataFileDescriptor],
        delete_files: Sequence[DeleteFileDescriptor],
    ) -> StagedTransaction:
        table = self._load(table_name)
        return StagedTransaction(
            table_name=table_name,
            data_files=tuple(data_files),
            delete_files=tuple(delete_files),
            handle=table,
        )

    def commit(
        self, staged: StagedTransaction, metadata: Mapping[str, str]
    ) -> CommitResult:
        from pyiceberg.exceptions import CommitFailedException

        if staged.delete_files:
            return Failure(
                cause=(
                    f"{len(staged.delete_files)} delete file(s) cannot be added "
                    f"through pyiceberg"
                )
            )
        table = staged.handle
        if table is None:
            return Failure(cause="transaction was not staged by this service")

        try:
            with table.transaction() as txn:
                txn.add_files(
                    file_paths=[f.path for f in staged.data_files],
                    snapshot_properties=dict(metadata),
                )
        except CommitFailedException as exc:
            return Conflict(reason=str(exc))
        except Exception as exc:
            logger.exception("iceberg_tables.commit_error", table=str(staged.table_name))
            return Failure(cause=str(exc))

        snapshot = table.current_snapshot()
        snapshot_id = snapshot.snapshot_id if snapshot is not None else None
        logger.info(
            "iceberg_tables.committed",
            table=str(staged.table_name),
            data_files=len(staged.data_files),
            snapshot_id=snapshot_id,
        )
        return Success(snapshot_id=snapshot_id)

    def snapshot_properties(self, table_name: TableName) -> dict[str, str]:
        table = self._load(table_name)
        snapshot = table.current_snapshot()
        if snapshot is None or snapshot.summary is None:
            return {}
        summary = snapshot.summary
        props = getattr(summary, "additional_properties", None)
        if props is None:
            props = dict(summary)
        return {str(k): str(v) for k, v in props.items()}
