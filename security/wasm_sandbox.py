from __future__ import annotations
import json
import tempfile
import time
from pathlib import Path
from typing import Any, Dict

from wasmtime import Config, Engine, ExitTrap, Linker, Module, Store, Trap, WasiConfig, WasmtimeError

from api.config import WASM_FUEL, WASM_MAX_OUTPUT_BYTES

WASM_MAGIC = b"\x00asm"


class SandboxError(Exception):
    pass


class SandboxLimitExceeded(SandboxError):
    pass


def is_wasm(binary: bytes) -> bool:
    return len(binary) >= 4 and binary[:4] == WASM_MAGIC


def run_module(
    wasm_binary: bytes,
    input_doc: Any,
    *,
    entry: str = "_start",
    fuel: int = WASM_FUEL,
    max_output_bytes: int = WASM_MAX_OUTPUT_BYTES,
) -> Dict[str, Any]:
    """
    Run a WASI command module in a fresh store:
      - no preopened directories, no env, no args (no filesystem or network)
      - input JSON on stdin, output JSON expected on stdout
      - execution bounded by fuel instead of wall-clock time
    Blocking; call it from a worker thread.
    """
    if not is_wasm(wasm_binary):
        raise SandboxError("not a wasm binary (bad magic header)")

    cfg = Config()
    cfg.consume_fuel = True
    engine = Engine(cfg)
    try:
        module = Module(engine, wasm_binary)
    except WasmtimeError as e:
        raise SandboxError(f"module failed to compile: {e}") from e

    linker = Linker(engine)
    linker.define_wasi()
    store = Store(engine)
    store.set_fuel(fuel)

    t0 = time.time()
    with tempfile.TemporaryDirectory(prefix="spell-wasm-") as tmp:
        stdin_path = Path(tmp) / "stdin.json"
        stdout_path = Path(tmp) / "stdout"
        stderr_path = Path(tmp) / "stderr"
        stdin_path.write_text(json.dumps(input_doc, ensure_ascii=False), encoding="utf-8")

        wasi = WasiConfig()
        wasi.stdin_file = str(stdin_path)
        wasi.stdout_file = str(stdout_path)
        wasi.stderr_file = str(stderr_path)
        store.set_wasi(wasi)

        try:
            instance = linker.instantiate(store, module)
        except (WasmtimeError, Trap) as e:
            raise SandboxError(f"module failed to instantiate: {e}") from e

        try:
            func = instance.exports(store)[entry]
        except KeyError:
            raise SandboxError(f"module has no export named {entry!r}") from None

        exit_code = 0
        try:
            func(store)
        except ExitTrap as e:
            exit_code = e.code
        except (Trap, WasmtimeError) as e:
            if "fuel" in str(e).lower():
                raise SandboxLimitExceeded("execution exceeded its fuel budget") from e
            raise SandboxError(f"module trapped: {e}") from e

        stderr = stderr_path.read_bytes()[:2000].decode("utf-8", errors="replace") if stderr_path.exists() else ""
        if exit_code != 0:
            raise SandboxError(f"module exited with code {exit_code}: {stderr.strip()}")

        raw = stdout_path.read_bytes() if stdout_path.exists() else b""

    if len(raw) > max_output_bytes:
        raise SandboxLimitExceeded(f"output exceeds {max_output_bytes} bytes")

    text = raw.decode("utf-8", errors="replace").strip()
    try:
        parsed = json.loads(text) if text else {}
    except json.JSONDecodeError:
        parsed = {"stdout": text}
    if not isinstance(parsed, dict):
        parsed = {"result": parsed}

    return {
        "output": parsed,
        "latency_ms": int((time.time() - t0) * 1000),
    }
