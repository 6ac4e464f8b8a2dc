from __future__ import annotations

from io import BytesIO
from pathlib import Path
import tempfile
from unittest import mock

from openpyxl import Workbook

import labelcheck_core as core


IMPORT_HEADERS = ["Referencia", "Etiqueta", "Destino", "Ciudad", "Ruta"]


def build_row(code: str, route: str, city: str, destination: str, reference: str) -> dict[str, str]:
    return {
        "Referencia": reference,
        "Etiqueta": code,
        "Destino": destination,
        "Ciudad": city,
        "Ruta": route,
    }


def scenario_rows() -> list[dict[str, str]]:
    return [
        build_row("A1", "R1", "C1", "D1", "Ref1"),
        build_row("A2", "R1", "C1", "D1", "Ref1"),
        build_row("B1", "R2", "C2", "D2", "Ref2"),
    ]


def build_workbook_bytes(rows: list[dict[str, object]], headers: list[str] | None = None) -> bytes:
    headers = headers or IMPORT_HEADERS
    workbook = Workbook()
    worksheet = workbook.active
    worksheet.title = "Etiquetas"
    worksheet.append(headers)
    for row in rows:
        worksheet.append([row.get(header) for header in headers])
    buffer = BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


class SessionTestCase:
    """Mixin giving each test an isolated snapshot file and runtime log."""

    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.temp_dir.name)
        self.log_patch = mock.patch.object(core, "APP_RUNTIME_LOG_PATH", self.root / "runtime.log")
        self.log_patch.start()
        self.snapshot_path = self.root / "state.json"
        self.feedback: list[str] = []
        self.session = self.new_session()

    def tearDown(self) -> None:
        self.log_patch.stop()
        self.temp_dir.cleanup()

    def new_session(self) -> core.LabelSession:
        return core.LabelSession(store=core.SnapshotStore(self.snapshot_path), on_feedback=self.feedback.append)

    def import_rows(self, rows: list[dict[str, object]] | None = None) -> str:
        data = build_workbook_bytes(rows if rows is not None else scenario_rows())
        return self.session.import_file(data, "etiquetas.xlsx")
