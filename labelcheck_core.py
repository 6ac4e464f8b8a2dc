from __future__ import annotations

from copy import deepcopy
from datetime import datetime, timezone
import json
import os
from pathlib import Path
import tempfile
import traceback
from typing import Any, Callable

import labelcheck_workbook as workbook_codec


APP_NAME = "LabelCheck"
APP_VERSION = "2026.10.19.1"
STORAGE_KEY = "appState_etiquetas"
DEFAULT_SNAPSHOT_PATH = Path.home() / ".labelcheck_state.json"
APP_SETTINGS_PATH = Path.home() / ".labelcheck_settings.json"
APP_RUNTIME_LOG_PATH = Path.home() / ".labelcheck_runtime.log"
MAX_RUNTIME_LOG_LINES = 1200
DEFAULT_AUTO_SUBMIT_LENGTH = 8
MIN_AUTO_SUBMIT_LENGTH = 1
MAX_AUTO_SUBMIT_LENGTH = 64
AUTO_SUBMIT_DEBOUNCE_MS = 100

FIELD_REFERENCE = "Referencia"
FIELD_CODE = "Etiqueta"
FIELD_DESTINATION = "Destino"
FIELD_CITY = "Ciudad"
FIELD_ROUTE = "Ruta"
FIELD_VALIDATED = "validado"
FIELD_STATUS = "Estado"
RECORD_FIELDS = [FIELD_REFERENCE, FIELD_CODE, FIELD_DESTINATION, FIELD_CITY, FIELD_ROUTE]
EXPORT_HEADERS = [*RECORD_FIELDS, FIELD_STATUS]
STATUS_OK = "OK"

# Drill-down order; one filter field per level below the root.
FILTER_FIELDS = [FIELD_ROUTE, FIELD_CITY, FIELD_DESTINATION, FIELD_REFERENCE]
LEVEL_ROUTES = "routes"
LEVEL_CITIES = "cities"
LEVEL_DESTINATIONS = "destinations"
LEVEL_REFERENCES = "references"
LEVEL_LABELS = "labels"
LEVELS = [LEVEL_ROUTES, LEVEL_CITIES, LEVEL_DESTINATIONS, LEVEL_REFERENCES, LEVEL_LABELS]

VIEW_WELCOME = "welcome"
VIEW_LIST = "list"

SCAN_NEW = "new"
SCAN_DUPLICATE = "duplicate"
OUTCOME_FOUND = "found"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_NOT_FOUND = "not_found"
OUTCOME_IMPORTED = "imported"
OUTCOME_INVALID_FORMAT = "invalid_format"
OUTCOME_BUSY = "busy"

FEEDBACK_SUCCESS = "success"
FEEDBACK_ERROR = "error"

ACTION_SHOW_ROUTES = "show_routes"
ACTION_ENTER = "enter"
ACTION_BACK = "back"
ACTION_RESTORE = "restore"
ACTION_SCAN = "scan"
ACTION_TOGGLE = "toggle"
ACTION_CLEAR = "clear"
ACTION_EXIT = "exit"


def append_runtime_log(level: str, context: str, message: str) -> None:
    level_text = str(level).strip().upper() or "INFO"
    context_text = str(context).strip() or "runtime"
    message_text = str(message).replace("\r", " ").replace("\n", " ").strip()
    if not message_text:
        message_text = "(no details)"

    line = f"{datetime.now().isoformat(timespec='seconds')} [{level_text}] {context_text} :: {message_text}\n"

    try:
        APP_RUNTIME_LOG_PATH.parent.mkdir(parents=True, exist_ok=True)
        with APP_RUNTIME_LOG_PATH.open("a", encoding="utf-8") as handle:
            handle.write(line)
    except Exception:
        return

    try:
        lines = APP_RUNTIME_LOG_PATH.read_text(encoding="utf-8", errors="replace").splitlines()
        if len(lines) > MAX_RUNTIME_LOG_LINES:
            APP_RUNTIME_LOG_PATH.write_text("\n".join(lines[-MAX_RUNTIME_LOG_LINES:]) + "\n", encoding="utf-8")
    except Exception:
        pass


def log_runtime_error(context: str, exc: Exception) -> None:
    error_summary = f"{exc.__class__.__name__}: {exc}"
    trace_text = traceback.format_exc().strip()
    if trace_text and trace_text != "NoneType: None":
        error_summary = f"{error_summary} | traceback={trace_text}"
    append_runtime_log("ERROR", context, error_summary)


def read_runtime_log_tail(max_lines: int = 120) -> list[str]:
    bounded_lines = max(1, int(max_lines))
    try:
        if not APP_RUNTIME_LOG_PATH.exists():
            return []
        log_lines = APP_RUNTIME_LOG_PATH.read_text(encoding="utf-8", errors="replace").splitlines()
        return log_lines[-bounded_lines:]
    except Exception:
        return []


def clear_runtime_log() -> None:
    try:
        APP_RUNTIME_LOG_PATH.unlink(missing_ok=True)
    except Exception:
        pass


def normalize_auto_submit_length(value: Any, default: int = DEFAULT_AUTO_SUBMIT_LENGTH) -> int:
    try:
        parsed = int(str(value).strip())
    except Exception:
        parsed = int(default)
    parsed = max(MIN_AUTO_SUBMIT_LENGTH, parsed)
    parsed = min(MAX_AUTO_SUBMIT_LENGTH, parsed)
    return parsed


def load_app_settings() -> dict[str, Any]:
    settings: dict[str, Any] = {
        "snapshot_path": str(DEFAULT_SNAPSHOT_PATH),
        "auto_submit_length": DEFAULT_AUTO_SUBMIT_LENGTH,
        "sound_enabled": True,
    }
    if not APP_SETTINGS_PATH.exists():
        return settings
    try:
        saved = json.loads(APP_SETTINGS_PATH.read_text(encoding="utf-8"))
    except Exception as exc:
        log_runtime_error("settings.load", exc)
        return settings
    if not isinstance(saved, dict):
        return settings

    snapshot_path = str(saved.get("snapshot_path", "")).strip()
    if snapshot_path:
        settings["snapshot_path"] = snapshot_path
    settings["auto_submit_length"] = normalize_auto_submit_length(
        saved.get("auto_submit_length", DEFAULT_AUTO_SUBMIT_LENGTH)
    )
    sound_value = saved.get("sound_enabled", True)
    if isinstance(sound_value, bool):
        settings["sound_enabled"] = sound_value
    return settings


def save_app_settings(
    snapshot_path: str | None = None,
    auto_submit_length: int | None = None,
    sound_enabled: bool | None = None,
) -> None:
    existing_settings = load_app_settings()
    payload = {
        "snapshot_path": str(snapshot_path if snapshot_path is not None else existing_settings["snapshot_path"]).strip(),
        "auto_submit_length": normalize_auto_submit_length(
            auto_submit_length if auto_submit_length is not None else existing_settings["auto_submit_length"]
        ),
        "sound_enabled": bool(sound_enabled if sound_enabled is not None else existing_settings["sound_enabled"]),
    }
    APP_SETTINGS_PATH.parent.mkdir(parents=True, exist_ok=True)
    APP_SETTINGS_PATH.write_text(json.dumps(payload, indent=2), encoding="utf-8")


def load_json_dict(path: Path) -> dict[str, Any]:
    backup_path = path.with_suffix(f"{path.suffix}.bak")
    for index, candidate in enumerate([path, backup_path]):
        if not candidate.exists():
            continue
        try:
            loaded = json.loads(candidate.read_text(encoding="utf-8"))
        except Exception:
            continue
        if isinstance(loaded, dict):
            # Self-heal from backup if the primary file is corrupt.
            if index == 1:
                try:
                    write_json_dict_atomic(path, loaded, keep_backup=False)
                except Exception:
                    pass
            return loaded
    return {}


def write_json_dict_atomic(path: Path, payload: dict[str, Any], *, keep_backup: bool = True) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_fd, temp_name = tempfile.mkstemp(prefix=f"{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(temp_fd, "w", encoding="utf-8") as temp_file:
            json.dump(payload, temp_file, indent=2, ensure_ascii=False)
            temp_file.flush()
            os.fsync(temp_file.fileno())
        if keep_backup and path.exists():
            backup_path = path.with_suffix(f"{path.suffix}.bak")
            try:
                backup_path.write_bytes(path.read_bytes())
            except Exception:
                pass
        os.replace(temp_name, path)
    finally:
        try:
            Path(temp_name).unlink(missing_ok=True)
        except Exception:
            pass


def empty_app_state() -> dict[str, Any]:
    return {
        "etiquetas": [],
        "navigationStack": [],
        "currentView": VIEW_WELCOME,
        "currentFilter": {},
        "lastSaved": None,
    }


class SnapshotStore:
    """Durable home of the application snapshot.

    The snapshot is written under ``key`` inside a JSON file. Every save also
    keeps a serialized copy in memory, so a failed disk write or read still
    leaves the latest state recoverable for the life of the process. Failures
    are logged and never raised.
    """

    def __init__(self, path: Path | str = DEFAULT_SNAPSHOT_PATH, key: str = STORAGE_KEY) -> None:
        self.path = Path(path).expanduser()
        self.key = key
        self._mirror: str | None = None

    def save(self, state: dict[str, Any]) -> bool:
        state["lastSaved"] = datetime.now(timezone.utc).isoformat(timespec="milliseconds")
        try:
            snapshot_text = json.dumps(state, ensure_ascii=False)
        except (TypeError, ValueError) as exc:
            log_runtime_error("snapshot.serialize", exc)
            return False
        self._mirror = snapshot_text

        try:
            stored = load_json_dict(self.path)
            stored[self.key] = json.loads(snapshot_text)
            write_json_dict_atomic(self.path, stored)
        except Exception as exc:
            log_runtime_error("snapshot.save", exc)
            return False
        return True

    def load(self) -> dict[str, Any] | None:
        try:
            stored = load_json_dict(self.path).get(self.key)
            if isinstance(stored, dict):
                return stored
        except Exception as exc:
            log_runtime_error("snapshot.load", exc)

        if self._mirror:
            try:
                loaded = json.loads(self._mirror)
            except ValueError as exc:
                log_runtime_error("snapshot.load_mirror", exc)
                return None
            if isinstance(loaded, dict):
                return loaded
        return None


def build_label_record(row: dict[str, Any]) -> dict[str, Any]:
    record: dict[str, Any] = {}
    for field in RECORD_FIELDS:
        value = row.get(field, "")
        record[field] = "" if value is None else str(value)
    record[FIELD_VALIDATED] = False
    return record


def sanitize_app_state(raw_state: Any) -> dict[str, Any]:
    state = empty_app_state()
    if not isinstance(raw_state, dict):
        return state

    records: list[dict[str, Any]] = []
    for raw_record in raw_state.get("etiquetas", []) or []:
        if not isinstance(raw_record, dict):
            continue
        record = build_label_record(raw_record)
        record[FIELD_VALIDATED] = bool(raw_record.get(FIELD_VALIDATED, False))
        records.append(record)
    state["etiquetas"] = records

    raw_filter = raw_state.get("currentFilter", {})
    current_filter: dict[str, str] = {}
    if isinstance(raw_filter, dict):
        for field in FILTER_FIELDS:
            if field not in raw_filter:
                break
            current_filter[field] = str(raw_filter[field])
    state["currentFilter"] = current_filter

    raw_stack = raw_state.get("navigationStack", [])
    if isinstance(raw_stack, list):
        state["navigationStack"] = [
            deepcopy(frame)
            for frame in raw_stack
            if isinstance(frame, dict) and frame.get("level") in LEVELS and isinstance(frame.get("filter"), dict)
        ]

    view = raw_state.get("currentView", VIEW_WELCOME)
    state["currentView"] = view if view in {VIEW_WELCOME, VIEW_LIST} else VIEW_WELCOME
    last_saved = raw_state.get("lastSaved")
    state["lastSaved"] = str(last_saved) if last_saved else None
    return state


def level_for_filter(current_filter: dict[str, str]) -> str:
    return LEVELS[len(current_filter)]


def build_navigation_stack(current_filter: dict[str, str]) -> list[dict[str, Any]]:
    frames: list[dict[str, Any]] = []
    for depth in range(len(current_filter)):
        frames.append(
            {
                "level": LEVELS[depth],
                "filter": {field: current_filter[field] for field in FILTER_FIELDS[:depth]},
            }
        )
    return frames


def matching_records(records: list[dict[str, Any]], current_filter: dict[str, str]) -> list[dict[str, Any]]:
    return [
        record
        for record in records
        if all(record.get(field, "") == value for field, value in current_filter.items())
    ]


def distinct_values(records: list[dict[str, Any]], current_filter: dict[str, str], field: str) -> list[str]:
    values: list[str] = []
    seen: set[str] = set()
    for record in matching_records(records, current_filter):
        value = record.get(field, "")
        if not value or value in seen:
            continue
        seen.add(value)
        values.append(value)
    return values


def group_summary(
    records: list[dict[str, Any]],
    current_filter: dict[str, str],
    field: str,
    value: str,
) -> dict[str, Any]:
    group = matching_records(records, {**current_filter, field: value})
    validated = sum(1 for record in group if record.get(FIELD_VALIDATED))
    total = len(group)
    return {
        "value": value,
        "validated": validated,
        "total": total,
        "complete": total > 0 and validated == total,
    }


def build_listing(records: list[dict[str, Any]], current_filter: dict[str, str]) -> dict[str, Any]:
    level = level_for_filter(current_filter)
    listing: dict[str, Any] = {
        "level": level,
        "filter": dict(current_filter),
        "can_go_back": bool(current_filter),
    }
    if level == LEVEL_LABELS:
        listing["labels"] = matching_records(records, current_filter)
        listing["groups"] = []
        return listing

    field = FILTER_FIELDS[len(current_filter)]
    listing["field"] = field
    listing["groups"] = [
        group_summary(records, current_filter, field, value)
        for value in distinct_values(records, current_filter, field)
    ]
    listing["labels"] = []
    return listing


def summarize_validation(records: list[dict[str, Any]]) -> tuple[int, int]:
    validated = sum(1 for record in records if record.get(FIELD_VALIDATED))
    return validated, len(records)


def find_record(records: list[dict[str, Any]], code: str, *, ignore_case: bool = False) -> dict[str, Any] | None:
    target = code.upper() if ignore_case else code
    for record in records:
        candidate = str(record.get(FIELD_CODE, ""))
        if (candidate.upper() if ignore_case else candidate) == target:
            return record
    return None


def normalize_scan_code(raw: str) -> str:
    return str(raw or "").strip().upper()


def should_auto_submit(raw: str, length: int = DEFAULT_AUTO_SUBMIT_LENGTH) -> bool:
    # The browser-side scanner script in labelcheck.py applies the same rule.
    return len(str(raw or "").strip()) >= normalize_auto_submit_length(length)


def build_export_rows(records: list[dict[str, Any]]) -> list[dict[str, str]]:
    rows: list[dict[str, str]] = []
    for record in records:
        row = {field: str(record.get(field, "")) for field in RECORD_FIELDS}
        row[FIELD_STATUS] = STATUS_OK if record.get(FIELD_VALIDATED) else ""
        rows.append(row)
    return rows


def build_export_file_name(extension: str = "xlsx", now: datetime | None = None) -> str:
    moment = now or datetime.now(timezone.utc)
    timestamp = moment.strftime("%Y-%m-%dT%H:%M:%S").replace(":", "-")
    return f"etiquetas_resultado_{timestamp}.{extension.lstrip('.')}"


class ScanGuard:
    """Codes scanned during this session; never persisted."""

    def __init__(self) -> None:
        self._seen: set[str] = set()

    def check(self, code: str) -> str:
        normalized = normalize_scan_code(code)
        if normalized in self._seen:
            return SCAN_DUPLICATE
        self._seen.add(normalized)
        return SCAN_NEW

    def reset(self) -> None:
        self._seen = set()

    def __len__(self) -> int:
        return len(self._seen)

    def __contains__(self, code: object) -> bool:
        return normalize_scan_code(str(code)) in self._seen


class LabelSession:
    """Controller owning the application state of one browser session.

    The view layer calls the operations below (directly or through
    ``dispatch``) and projects ``listing``, ``footer`` and ``search_result``.
    Every state change is written to the snapshot store.
    """

    def __init__(
        self,
        store: SnapshotStore | None = None,
        on_feedback: Callable[[str], None] | None = None,
    ) -> None:
        self.store = store if store is not None else SnapshotStore()
        self.on_feedback = on_feedback
        self.state = empty_app_state()
        self.guard = ScanGuard()
        self.search_result_code: str | None = None
        self.import_in_progress = False
        self.listing: dict[str, Any] = build_listing([], {})

    @property
    def records(self) -> list[dict[str, Any]]:
        return self.state["etiquetas"]

    @property
    def current_filter(self) -> dict[str, str]:
        return self.state["currentFilter"]

    @property
    def navigation_stack(self) -> list[dict[str, Any]]:
        return self.state["navigationStack"]

    @property
    def current_view(self) -> str:
        return self.state["currentView"]

    @property
    def level(self) -> str:
        return level_for_filter(self.current_filter)

    @property
    def footer(self) -> tuple[int, int]:
        return summarize_validation(self.records)

    @property
    def search_result(self) -> dict[str, Any] | None:
        if self.search_result_code is None:
            return None
        return find_record(self.records, self.search_result_code)

    def _emit_feedback(self, kind: str) -> None:
        if self.on_feedback is None:
            return
        try:
            self.on_feedback(kind)
        except Exception as exc:
            log_runtime_error("feedback", exc)

    def _refresh(self) -> dict[str, Any]:
        self.listing = build_listing(self.records, self.current_filter)
        self.store.save(self.state)
        return self.listing

    def load(self) -> bool:
        """Restore the last snapshot; returns whether a session with records resumed."""
        snapshot = self.store.load()
        if snapshot is None:
            return False
        self.state = sanitize_app_state(snapshot)
        self.guard.reset()
        self.search_result_code = None
        if not self.records:
            self.state["currentView"] = VIEW_WELCOME
            self.listing = build_listing([], {})
            return False
        self.state["currentView"] = VIEW_LIST
        self.restore()
        return True

    def show_routes(self) -> dict[str, Any]:
        self.state["navigationStack"] = []
        self.state["currentFilter"] = {}
        return self._refresh()

    def enter(self, value: str) -> dict[str, Any]:
        depth = len(self.current_filter)
        if depth >= len(FILTER_FIELDS):
            return self.listing
        self.navigation_stack.append({"level": LEVELS[depth], "filter": dict(self.current_filter)})
        self.current_filter[FILTER_FIELDS[depth]] = str(value)
        return self._refresh()

    def back(self) -> dict[str, Any]:
        if not self.navigation_stack:
            return self.listing
        frame = self.navigation_stack.pop()
        frame_filter = frame.get("filter", {}) if isinstance(frame, dict) else {}
        self.state["currentFilter"] = {
            field: str(frame_filter[field]) for field in FILTER_FIELDS if field in frame_filter
        }
        if not self.current_filter:
            self.state["navigationStack"] = []
        return self._refresh()

    def restore(self) -> dict[str, Any]:
        expected_stack = build_navigation_stack(self.current_filter)
        if self.navigation_stack != expected_stack:
            append_runtime_log(
                "WARNING",
                "navigation.restore",
                f"stack of depth {len(self.navigation_stack)} does not match filter "
                f"{self.current_filter}; rebuilding stack",
            )
            self.state["navigationStack"] = expected_stack
        return self._refresh()

    def submit_scan(self, raw: str) -> str | None:
        code = normalize_scan_code(raw)
        if not code:
            return None

        if self.guard.check(code) == SCAN_DUPLICATE:
            self.search_result_code = None
            self._emit_feedback(FEEDBACK_ERROR)
            return OUTCOME_DUPLICATE

        record = find_record(self.records, code, ignore_case=True)
        if record is None:
            self.search_result_code = None
            self._emit_feedback(FEEDBACK_ERROR)
            return OUTCOME_NOT_FOUND

        self.search_result_code = record[FIELD_CODE]
        self._emit_feedback(FEEDBACK_SUCCESS)
        return OUTCOME_FOUND

    def clear_search_result(self) -> None:
        self.search_result_code = None

    def toggle(self, code: str) -> dict[str, Any] | None:
        record = find_record(self.records, code)
        if record is None:
            return None
        record[FIELD_VALIDATED] = not record[FIELD_VALIDATED]
        if self.current_view == VIEW_LIST:
            self.listing = build_listing(self.records, self.current_filter)
        self.store.save(self.state)
        return record

    def import_file(self, data: bytes, file_name: str = "") -> str:
        if self.import_in_progress:
            append_runtime_log("WARNING", "import", f"rejected {file_name or 'file'}: import already in progress")
            return OUTCOME_BUSY

        self.import_in_progress = True
        try:
            try:
                rows = workbook_codec.read_label_rows(data, file_name)
            except workbook_codec.LabelImportError as exc:
                log_runtime_error("import.parse", exc)
                return OUTCOME_INVALID_FORMAT

            self.state["etiquetas"] = [build_label_record(row) for row in rows]
            self.state["navigationStack"] = []
            self.state["currentFilter"] = {}
            self.state["currentView"] = VIEW_LIST
            self.guard.reset()
            self.search_result_code = None
            self._refresh()
        finally:
            self.import_in_progress = False

        append_runtime_log("INFO", "import", f"imported {len(self.records)} labels from {file_name or 'file'}")
        return OUTCOME_IMPORTED

    def export_file(self, fmt: str = "xlsx", now: datetime | None = None) -> tuple[str, bytes] | None:
        if not self.records:
            return None
        rows = build_export_rows(self.records)
        data = workbook_codec.write_result_rows(rows, EXPORT_HEADERS, fmt)
        return build_export_file_name(fmt, now=now), data

    def record_export_download(self, file_name: str) -> None:
        validated, total = self.footer
        append_runtime_log("INFO", "export", f"downloaded {file_name} ({validated}/{total} validated)")

    def has_validated(self) -> bool:
        return any(record.get(FIELD_VALIDATED) for record in self.records)

    def clear(self) -> bool:
        if not self.records:
            return False
        self._reset()
        append_runtime_log("INFO", "clear", "all label data cleared")
        return True

    def exit_app(self) -> None:
        self._reset()
        append_runtime_log("INFO", "exit", "session closed and label data cleared")

    def _reset(self) -> None:
        self.state = empty_app_state()
        self.guard.reset()
        self.search_result_code = None
        self.listing = build_listing([], {})
        self.store.save(self.state)

    def dispatch(self, action: str, value: Any = None) -> Any:
        handlers: dict[str, Callable[[], Any]] = {
            ACTION_SHOW_ROUTES: self.show_routes,
            ACTION_ENTER: lambda: self.enter(value),
            ACTION_BACK: self.back,
            ACTION_RESTORE: self.restore,
            ACTION_SCAN: lambda: self.submit_scan(value),
            ACTION_TOGGLE: lambda: self.toggle(value),
            ACTION_CLEAR: self.clear,
            ACTION_EXIT: self.exit_app,
        }
        handler = handlers.get(action)
        if handler is None:
            raise ValueError(f"Unknown action: {action}")
        return handler()
