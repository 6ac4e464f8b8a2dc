from __future__ import annotations

from datetime import datetime
import html
import json
import os
from pathlib import Path
from typing import Any

import streamlit as st
import streamlit.components.v1 as components

import labelcheck_core as core
from labelcheck_workbook import SUPPORTED_IMPORT_EXTENSIONS, mime_type_for


DESKTOP_MODE_ENV_VAR = "LABELCHECK_DESKTOP_MODE"
BROWSER_MODE_OVERRIDE_ENV_VAR = "LABELCHECK_ALLOW_BROWSER_MODE"
SESSION_STATE_KEY = "state::label_session"
SETTINGS_STATE_KEY = "state::app_settings"
FLASH_STATE_KEY = "state::flash_messages"
PENDING_FEEDBACK_STATE_KEY = "state::pending_feedback"
UPLOADER_NONCE_STATE_KEY = "state::uploader_nonce"
SEARCH_INPUT_STATE_KEY = "state::search_input"
SEARCH_OUTCOME_STATE_KEY = "state::search_outcome"
EXPORT_FORMAT_STATE_KEY = "state::export_format"
FEEDBACK_NONCE_STATE_KEY = "state::feedback_nonce"
SCAN_NONCE_STATE_KEY = "state::scan_nonce"
SEARCH_INPUT_LABEL = "Código de etiqueta"
IMPORT_ERROR_MESSAGE = "Error al leer el archivo. Por favor, verifica el formato."
NOTHING_TO_EXPORT_MESSAGE = "No hay datos para exportar"
LEVEL_TITLES = {
    core.LEVEL_ROUTES: "Rutas",
    core.LEVEL_CITIES: "Ciudades",
    core.LEVEL_DESTINATIONS: "Destinos",
    core.LEVEL_REFERENCES: "Referencias",
    core.LEVEL_LABELS: "Etiquetas",
}
SOUND_PRESETS = {
    core.FEEDBACK_SUCCESS: {"frequency": 800, "wave": "sine", "duration": 0.2},
    core.FEEDBACK_ERROR: {"frequency": 200, "wave": "sawtooth", "duration": 0.3},
}
APP_STYLE = """
<style>
    [data-testid="stToolbar"], [data-testid="stDecoration"], [data-testid="stStatusWidget"] {
        display: none !important;
    }
    .labelcheck-breadcrumb { color: #47464f; font-size: 0.9rem; margin-bottom: 0.4rem; }
    .labelcheck-footer {
        margin-top: 1.2rem;
        padding: 0.6rem 0.9rem;
        border-top: 1px solid #d2d9e8;
        text-align: center;
        font-size: 1.05rem;
    }
    .labelcheck-footer .validated { color: #386a20; font-weight: 700; }
    .labelcheck-result { border: 1px solid #d2d9e8; border-radius: 16px; padding: 0.8rem 1rem; }
    .labelcheck-result-code { font-size: 1.5rem; font-weight: 700; letter-spacing: 0.04em; }
</style>
"""


def get_app_settings() -> dict[str, Any]:
    if SETTINGS_STATE_KEY not in st.session_state:
        st.session_state[SETTINGS_STATE_KEY] = core.load_app_settings()
    return st.session_state[SETTINGS_STATE_KEY]


def queue_feedback(kind: str) -> None:
    st.session_state[PENDING_FEEDBACK_STATE_KEY] = kind


def get_label_session() -> core.LabelSession:
    session = st.session_state.get(SESSION_STATE_KEY)
    if isinstance(session, core.LabelSession):
        return session

    settings = get_app_settings()
    store = core.SnapshotStore(Path(settings["snapshot_path"]).expanduser())
    session = core.LabelSession(store=store, on_feedback=queue_feedback)
    if session.load():
        core.append_runtime_log("INFO", "session.restore", f"resumed {len(session.records)} labels")
    st.session_state[SESSION_STATE_KEY] = session
    return session


def flash(level: str, message: str) -> None:
    st.session_state.setdefault(FLASH_STATE_KEY, []).append((level, message))


def render_flash_messages() -> None:
    for level, message in st.session_state.pop(FLASH_STATE_KEY, []):
        if level == "error":
            st.error(message)
        elif level == "warning":
            st.warning(message)
        else:
            st.success(message)


def next_render_nonce(state_key: str) -> int:
    nonce = int(st.session_state.get(state_key, 0)) + 1
    st.session_state[state_key] = nonce
    return nonce


def build_feedback_script(kind: str, nonce: int) -> str:
    # The nonce changes the markup so the frontend remounts the iframe and runs it again.
    preset = SOUND_PRESETS[kind]
    return f"""
        <script>
            const feedbackNonce = {int(nonce)};
            const AudioCtx = window.AudioContext || window.webkitAudioContext;
            if (AudioCtx) {{
                const ctx = new AudioCtx();
                const oscillator = ctx.createOscillator();
                const gain = ctx.createGain();
                oscillator.connect(gain);
                gain.connect(ctx.destination);
                oscillator.frequency.value = {preset["frequency"]};
                oscillator.type = "{preset["wave"]}";
                gain.gain.setValueAtTime(0.3, ctx.currentTime);
                gain.gain.exponentialRampToValueAtTime(0.01, ctx.currentTime + {preset["duration"]});
                oscillator.start(ctx.currentTime);
                oscillator.stop(ctx.currentTime + {preset["duration"]});
            }}
        </script>
        """


def render_feedback_sound() -> None:
    kind = st.session_state.pop(PENDING_FEEDBACK_STATE_KEY, None)
    if kind not in SOUND_PRESETS or not get_app_settings().get("sound_enabled", True):
        return
    components.html(build_feedback_script(kind, next_render_nonce(FEEDBACK_NONCE_STATE_KEY)), height=0)


def build_autosubmit_script(length: int, nonce: int) -> str:
    # Scanners type the code without a terminator; blurring commits the value.
    # Mirrors core.should_auto_submit. The blurred input is refocused on the next rerun.
    threshold = core.normalize_auto_submit_length(length)
    return f"""
        <script>
            const scanNonce = {int(nonce)};
            const doc = window.parent.document;
            const input = doc.querySelector('input[aria-label="{SEARCH_INPUT_LABEL}"]');
            if (input) {{
                setTimeout(() => input.focus(), 0);
                if (!input.dataset.autosubmit) {{
                    input.dataset.autosubmit = "1";
                    let timer = null;
                    input.addEventListener("input", () => {{
                        clearTimeout(timer);
                        if (input.value.trim().length >= {threshold}) {{
                            timer = setTimeout(() => input.blur(), {core.AUTO_SUBMIT_DEBOUNCE_MS});
                        }}
                    }});
                }}
            }}
        </script>
        """


def render_scan_autosubmit(length: int) -> None:
    nonce = int(st.session_state.get(SCAN_NONCE_STATE_KEY, 0))
    components.html(build_autosubmit_script(length, nonce), height=0)


def handle_upload(uploader_key: str) -> None:
    session = get_label_session()
    uploaded = st.session_state.get(uploader_key)
    if uploaded is None:
        return

    try:
        outcome = session.import_file(uploaded.getvalue(), uploaded.name)
    except Exception as exc:
        core.log_runtime_error("import", exc)
        outcome = core.OUTCOME_INVALID_FORMAT

    if outcome == core.OUTCOME_IMPORTED:
        flash("success", f"{len(session.records)} etiquetas importadas de {uploaded.name}.")
    elif outcome == core.OUTCOME_BUSY:
        flash("warning", "Ya hay una importación en curso.")
    else:
        flash("error", IMPORT_ERROR_MESSAGE)
    st.session_state[UPLOADER_NONCE_STATE_KEY] = st.session_state.get(UPLOADER_NONCE_STATE_KEY, 0) + 1


def render_uploader(scope: str) -> None:
    accepted_types = sorted(extension.lstrip(".") for extension in SUPPORTED_IMPORT_EXTENSIONS)
    uploader_key = f"uploader::{scope}::{st.session_state.get(UPLOADER_NONCE_STATE_KEY, 0)}"
    st.file_uploader(
        "Importar archivo de etiquetas",
        type=accepted_types,
        key=uploader_key,
        on_change=handle_upload,
        args=(uploader_key,),
        help=(
            "Columnas reconocidas: Referencia, Etiqueta, Destino, Ciudad, Ruta. "
            "Los archivos .xls y .ods deben guardarse antes como .xlsx o .csv."
        ),
    )


def handle_scan_submit() -> None:
    session = get_label_session()
    raw_value = str(st.session_state.get(SEARCH_INPUT_STATE_KEY, ""))
    outcome = session.submit_scan(raw_value)
    st.session_state[SEARCH_OUTCOME_STATE_KEY] = (outcome, core.normalize_scan_code(raw_value))
    st.session_state[SEARCH_INPUT_STATE_KEY] = ""
    next_render_nonce(SCAN_NONCE_STATE_KEY)


def render_export_download(session: core.LabelSession, key_prefix: str) -> bool:
    if not session.records:
        st.warning(NOTHING_TO_EXPORT_MESSAGE)
        return False

    export_format = st.radio(
        "Formato",
        options=["xlsx", "csv"],
        key=f"{key_prefix}::{EXPORT_FORMAT_STATE_KEY}",
        horizontal=True,
    )
    try:
        exported = session.export_file(export_format)
    except Exception as exc:
        core.log_runtime_error("export", exc)
        st.error(f"No se pudo exportar: {exc}")
        return False
    if exported is None:
        st.warning(NOTHING_TO_EXPORT_MESSAGE)
        return False

    file_name, data = exported
    st.download_button(
        "Descargar resultado",
        data=data,
        file_name=file_name,
        mime=mime_type_for(export_format),
        key=f"{key_prefix}::download",
        on_click=session.record_export_download,
        args=(file_name,),
        use_container_width=True,
        type="primary",
    )
    return True


def render_footer(session: core.LabelSession) -> None:
    if not session.records:
        return
    validated, total = session.footer
    st.markdown(
        f"<div class='labelcheck-footer'><span class='validated'>{validated}</span> / {total} validadas</div>",
        unsafe_allow_html=True,
    )


def render_listing(session: core.LabelSession) -> None:
    listing = session.listing
    level = listing["level"]

    back_col, title_col = st.columns([2, 8], gap="small")
    with back_col:
        if listing["can_go_back"]:
            st.button(
                "← Atrás",
                key="navigate_back_button",
                on_click=session.dispatch,
                args=(core.ACTION_BACK,),
                use_container_width=True,
            )
    with title_col:
        st.subheader(LEVEL_TITLES[level])

    if listing["filter"]:
        crumbs = " › ".join(html.escape(value) for value in listing["filter"].values())
        st.markdown(f"<div class='labelcheck-breadcrumb'>{crumbs}</div>", unsafe_allow_html=True)

    if level == core.LEVEL_LABELS:
        for position, record in enumerate(listing["labels"]):
            code = record[core.FIELD_CODE]
            st.checkbox(
                f"**{code}** · {record[core.FIELD_DESTINATION]}",
                value=bool(record[core.FIELD_VALIDATED]),
                key=f"label_toggle::{position}::{code}::{int(bool(record[core.FIELD_VALIDATED]))}",
                on_change=session.dispatch,
                args=(core.ACTION_TOGGLE, code),
            )
        if not listing["labels"]:
            st.caption("No hay etiquetas en esta referencia.")
        return

    for position, group in enumerate(listing["groups"]):
        badge = f"{group['validated']}/{group['total']}"
        marker = "✅ " if group["complete"] else ""
        st.button(
            f"{marker}{group['value']}  ·  {group['total']} etiquetas  ·  {badge}",
            key=f"group::{level}::{position}",
            on_click=session.dispatch,
            args=(core.ACTION_ENTER, group["value"]),
            use_container_width=True,
            type="secondary" if group["complete"] else "primary",
        )
    if not listing["groups"]:
        st.caption("No hay grupos para mostrar.")


def main() -> None:
    desktop_mode_enabled = os.environ.get(DESKTOP_MODE_ENV_VAR, "").strip() == "1"
    browser_mode_override = os.environ.get(BROWSER_MODE_OVERRIDE_ENV_VAR, "").strip() == "1"
    st.set_page_config(
        page_title=core.APP_NAME,
        page_icon=":package:",
        layout="centered",
        initial_sidebar_state="collapsed",
    )
    if not desktop_mode_enabled and not browser_mode_override:
        st.error("LabelCheck browser mode is disabled. Launch `labelcheck_launcher.py`.")
        st.info("For local development only, set `LABELCHECK_ALLOW_BROWSER_MODE=1` before running Streamlit.")
        st.stop()

    st.markdown(APP_STYLE, unsafe_allow_html=True)
    settings = get_app_settings()
    session = get_label_session()

    @st.dialog("Buscar etiqueta")
    def show_search_dialog() -> None:
        st.text_input(
            SEARCH_INPUT_LABEL,
            key=SEARCH_INPUT_STATE_KEY,
            on_change=handle_scan_submit,
            placeholder="Escanea o escribe el código",
        )
        render_scan_autosubmit(settings["auto_submit_length"])

        outcome, scanned_code = st.session_state.get(SEARCH_OUTCOME_STATE_KEY, (None, ""))
        if outcome == core.OUTCOME_DUPLICATE:
            st.warning(f"La etiqueta {scanned_code} ya fue escaneada en esta sesión.")
        elif outcome == core.OUTCOME_NOT_FOUND:
            st.error(f"Etiqueta {scanned_code} no encontrada.")

        record = session.search_result
        if record is not None:
            details = "".join(
                f"<div><strong>{field}:</strong> {html.escape(record[field])}</div>"
                for field in (core.FIELD_REFERENCE, core.FIELD_DESTINATION, core.FIELD_CITY, core.FIELD_ROUTE)
            )
            st.markdown(
                f"<div class='labelcheck-result'><div class='labelcheck-result-code'>"
                f"{html.escape(record[core.FIELD_CODE])}</div>{details}</div>",
                unsafe_allow_html=True,
            )
            st.checkbox(
                "Validada",
                value=bool(record[core.FIELD_VALIDATED]),
                key=f"search_toggle::{record[core.FIELD_CODE]}::{int(bool(record[core.FIELD_VALIDATED]))}",
                on_change=session.dispatch,
                args=(core.ACTION_TOGGLE, record[core.FIELD_CODE]),
            )
        render_feedback_sound()

        if st.button("Cerrar", key="close_search_button", use_container_width=True):
            session.clear_search_result()
            st.session_state.pop(SEARCH_OUTCOME_STATE_KEY, None)
            st.rerun()

    @st.dialog("Importar etiquetas")
    def show_import_dialog() -> None:
        if session.records:
            st.caption("Importar reemplaza todas las etiquetas y validaciones actuales.")
        render_uploader("import_dialog")
        if st.button("Cerrar", key="close_import_button", use_container_width=True):
            st.rerun()

    @st.dialog("Exportar resultado")
    def show_export_dialog() -> None:
        render_export_download(session, "export_dialog")

    @st.dialog("Limpiar datos")
    def show_clear_dialog() -> None:
        st.write("¿Estás seguro de que quieres limpiar todos los datos?")
        confirm_col, cancel_col = st.columns(2, gap="small")
        with confirm_col:
            if st.button("Limpiar", key="confirm_clear_button", type="primary", use_container_width=True):
                session.dispatch(core.ACTION_CLEAR)
                st.rerun()
        with cancel_col:
            if st.button("Cancelar", key="cancel_clear_button", use_container_width=True):
                st.rerun()

    @st.dialog("Salir")
    def show_exit_dialog() -> None:
        if session.has_validated():
            st.write("Tienes etiquetas validadas. ¿Deseas exportar antes de salir?")
            render_export_download(session, "exit_dialog")
            st.divider()
        st.write("¿Estás seguro de que quieres salir? Se limpiarán todos los datos.")
        confirm_col, cancel_col = st.columns(2, gap="small")
        with confirm_col:
            if st.button("Salir", key="confirm_exit_button", type="primary", use_container_width=True):
                session.dispatch(core.ACTION_EXIT)
                st.rerun()
        with cancel_col:
            if st.button("Cancelar", key="cancel_exit_button", use_container_width=True):
                st.rerun()

    @st.dialog("Diagnóstico", width="large")
    def show_diagnostics_dialog() -> None:
        with st.form("settings_form", border=True):
            auto_submit_length = st.number_input(
                "Longitud de autoenvío del escáner",
                min_value=core.MIN_AUTO_SUBMIT_LENGTH,
                max_value=core.MAX_AUTO_SUBMIT_LENGTH,
                value=int(settings["auto_submit_length"]),
                step=1,
            )
            sound_enabled = st.toggle("Sonido de confirmación", value=bool(settings["sound_enabled"]))
            if st.form_submit_button("Guardar ajustes", use_container_width=True):
                try:
                    core.save_app_settings(auto_submit_length=int(auto_submit_length), sound_enabled=sound_enabled)
                except OSError as exc:
                    core.log_runtime_error("settings.save", exc)
                    st.error(f"No se pudieron guardar los ajustes: {exc}")
                else:
                    st.session_state[SETTINGS_STATE_KEY] = core.load_app_settings()
                    st.success("Ajustes guardados.")

        validated, total = session.footer
        diagnostics_payload = {
            "app_version": core.APP_VERSION,
            "snapshot_path": str(session.store.path),
            "last_saved": session.state.get("lastSaved"),
            "current_view": session.current_view,
            "level": session.level,
            "labels_total": total,
            "labels_validated": validated,
            "scanned_this_session": len(session.guard),
        }
        st.code(json.dumps(diagnostics_payload, indent=2), language="json")

        runtime_log_lines = core.read_runtime_log_tail(max_lines=200)
        with st.container(border=True):
            st.markdown("**Registro de ejecución**")
            st.caption(f"Archivo: `{core.APP_RUNTIME_LOG_PATH}`")
            if runtime_log_lines:
                st.code("\n".join(runtime_log_lines), language="text")
            else:
                st.caption("Sin entradas todavía.")
            log_col_1, log_col_2 = st.columns(2, gap="small")
            with log_col_1:
                st.download_button(
                    "Descargar registro",
                    data="\n".join(runtime_log_lines).encode("utf-8"),
                    file_name=f"labelcheck_runtime_log_{datetime.now().strftime('%Y%m%d_%H%M%S')}.txt",
                    mime="text/plain",
                    use_container_width=True,
                )
            with log_col_2:
                if st.button("Borrar registro", key="clear_runtime_log_button", use_container_width=True):
                    core.clear_runtime_log()
                    st.rerun()

    header_col, search_col, menu_col = st.columns([6, 2, 2], gap="small")
    with header_col:
        st.title(core.APP_NAME)
    with search_col:
        if session.current_view == core.VIEW_LIST and session.records:
            if st.button("Buscar", key="open_search_button", use_container_width=True):
                session.clear_search_result()
                st.session_state.pop(SEARCH_OUTCOME_STATE_KEY, None)
                show_search_dialog()
    with menu_col:
        with st.popover("Menú", use_container_width=True):
            open_import = st.button("Importar", key="menu_import_button", use_container_width=True)
            open_export = st.button("Exportar", key="menu_export_button", use_container_width=True)
            open_clear = st.button("Limpiar datos", key="menu_clear_button", use_container_width=True)
            open_diagnostics = st.button("Diagnóstico", key="menu_diagnostics_button", use_container_width=True)
            open_exit = st.button("Salir", key="menu_exit_button", use_container_width=True)

    render_flash_messages()

    if open_import:
        show_import_dialog()
    elif open_export:
        show_export_dialog()
    elif open_clear:
        if session.records:
            show_clear_dialog()
    elif open_diagnostics:
        show_diagnostics_dialog()
    elif open_exit:
        show_exit_dialog()

    if session.current_view != core.VIEW_LIST or not session.records:
        st.markdown("### Bienvenido")
        st.write("Importa un archivo Excel o CSV con las etiquetas para empezar la validación.")
        render_uploader("welcome")
        return

    render_listing(session)
    render_footer(session)


if __name__ == "__main__":
    main()
