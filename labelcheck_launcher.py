from __future__ import annotations

import argparse
import os
import subprocess
import sys
import time
import urllib.error
import urllib.request
from pathlib import Path
from socket import AF_INET, SOCK_STREAM, socket

from streamlit.web.cli import main as streamlit_cli_main

import labelcheck_core as core

APP_TITLE = core.APP_NAME
HOST = "127.0.0.1"
DEFAULT_PORT = 8502
STARTUP_TIMEOUT_SECONDS = 45
WINDOW_SIZE = (480, 860)
MIN_WINDOW_SIZE = (380, 600)
THEME_ARGS = [
    "--theme.base=light",
    "--theme.primaryColor=#0b57d0",
    "--theme.backgroundColor=#f3f6ff",
    "--theme.secondaryBackgroundColor=#ffffff",
    "--theme.textColor=#1b1b1f",
]
DESKTOP_MODE_ENV_VAR = "LABELCHECK_DESKTOP_MODE"
BLOCKED_ARG_PREFIXES = (
    "--server.port",
    "--server.address",
    "--server.headless",
    "--theme.",
)


def resolve_app_script() -> Path:
    if getattr(sys, "frozen", False) and hasattr(sys, "_MEIPASS"):
        return Path(sys._MEIPASS) / "labelcheck.py"
    return Path(__file__).with_name("labelcheck.py")


def parse_mode_args(argv: list[str]) -> tuple[bool, list[str]]:
    parser = argparse.ArgumentParser(add_help=False)
    parser.add_argument("--serve", action="store_true")
    parsed, passthrough = parser.parse_known_args(argv)
    return parsed.serve, passthrough


def is_port_open(host: str, port: int) -> bool:
    with socket(AF_INET, SOCK_STREAM) as probe:
        probe.settimeout(0.3)
        return probe.connect_ex((host, port)) == 0


def choose_port(preferred_port: int = DEFAULT_PORT) -> int:
    if not is_port_open(HOST, preferred_port):
        return preferred_port

    with socket(AF_INET, SOCK_STREAM) as probe:
        probe.bind((HOST, 0))
        return int(probe.getsockname()[1])


def wait_for_streamlit(port: int, server_proc: subprocess.Popen[bytes]) -> bool:
    health_url = f"http://{HOST}:{port}/_stcore/health"
    deadline = time.monotonic() + STARTUP_TIMEOUT_SECONDS

    while time.monotonic() < deadline:
        if server_proc.poll() is not None:
            return False
        try:
            with urllib.request.urlopen(health_url, timeout=1.0) as response:
                if response.status == 200:
                    return True
        except (urllib.error.URLError, TimeoutError):
            pass
        time.sleep(0.25)

    return False


def stop_process(process: subprocess.Popen[bytes] | None) -> None:
    if process is None or process.poll() is not None:
        return

    process.terminate()
    try:
        process.wait(timeout=5)
    except subprocess.TimeoutExpired:
        process.kill()
        process.wait(timeout=5)


def show_error(message: str) -> None:
    core.append_runtime_log("ERROR", "launcher", message)
    print(message, file=sys.stderr)


def build_server_args(passthrough_args: list[str], port: int) -> list[str]:
    filtered_args = [
        arg for arg in passthrough_args if not any(arg.startswith(prefix) for prefix in BLOCKED_ARG_PREFIXES)
    ]
    return [
        "--global.developmentMode=false",
        "--browser.gatherUsageStats=false",
        f"--server.address={HOST}",
        f"--server.port={port}",
        "--server.headless=true",
        "--server.fileWatcherType=none",
        *THEME_ARGS,
        *filtered_args,
    ]


def build_server_command(server_args: list[str]) -> list[str]:
    if getattr(sys, "frozen", False):
        command = [sys.executable, "--serve"]
    else:
        command = [sys.executable, str(Path(__file__).resolve()), "--serve"]
    command.extend(server_args)
    return command


def run_server_mode(streamlit_args: list[str]) -> int:
    sys.argv = ["streamlit", "run", str(resolve_app_script()), *streamlit_args]
    return streamlit_cli_main()


def run_desktop_mode(passthrough_args: list[str]) -> int:
    port = choose_port()
    server_cmd = build_server_command(build_server_args(passthrough_args, port))
    creation_flags = getattr(subprocess, "CREATE_NO_WINDOW", 0)
    server_proc: subprocess.Popen[bytes] | None = None

    try:
        server_env = os.environ.copy()
        server_env[DESKTOP_MODE_ENV_VAR] = "1"
        server_proc = subprocess.Popen(
            server_cmd,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            creationflags=creation_flags,
            env=server_env,
        )

        if not wait_for_streamlit(port, server_proc):
            show_error("LabelCheck server failed to start.")
            return 1

        import webview

        webview.create_window(
            APP_TITLE,
            f"http://{HOST}:{port}/",
            width=WINDOW_SIZE[0],
            height=WINDOW_SIZE[1],
            min_size=MIN_WINDOW_SIZE,
        )
        webview.start()
        return 0
    except Exception as exc:
        show_error(f"LabelCheck failed to open desktop window. {exc}")
        return 1
    finally:
        stop_process(server_proc)


def main() -> int:
    serve_mode, passthrough_args = parse_mode_args(sys.argv[1:])
    if serve_mode:
        return run_server_mode(passthrough_args)
    return run_desktop_mode(passthrough_args)


if __name__ == "__main__":
    raise SystemExit(main())
