from __future__ import annotations
import asyncio
import time
from typing import Any, Dict, Optional

import httpx
import jsonschema
import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from api.config import HTTP_RUNTIME_TIMEOUT_SEC, WASM_FUEL, WASM_MAX_OUTPUT_BYTES
from api.errors import SpellRuntimeError, SpellTimeoutError
from db.models import Spell
from db.spell_db import latest_artifact
from sdk.handler_registry import HandlerRegistry
from security.wasm_sandbox import SandboxError, SandboxLimitExceeded, run_module

logger = structlog.get_logger()


class SpellRuntime:
    """One execution strategy: input document + runtime config -> output document."""

    kind: str = ""
    config_schema: Dict[str, Any] = {"type": "object"}

    def validate_config(self, spell: Spell) -> Dict[str, Any]:
        config = spell.config or {}
        try:
            jsonschema.validate(instance=config, schema=self.config_schema)
        except jsonschema.ValidationError as e:
            raise SpellRuntimeError(f"Invalid {self.kind} runtime config: {e.message}") from e
        return config

    async def run(self, db: AsyncSession, spell: Spell, inputs: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError


class BuiltinRuntime(SpellRuntime):
    kind = "builtin"
    config_schema = {
        "type": "object",
        "properties": {"handler": {"type": "string", "minLength": 1}},
        "required": ["handler"],
    }

    def __init__(self, handlers: HandlerRegistry):
        self.handlers = handlers

    async def run(self, db, spell, inputs):
        config = self.validate_config(spell)
        handler = self.handlers.get(config["handler"])
        if handler is None:
            raise SpellRuntimeError(f"Unknown builtin handler: {config['handler']}")

        ctx = {"spell_key": spell.key, "spell_version": spell.version, "config": config}
        try:
            return handler.run(ctx, inputs)
        except jsonschema.ValidationError as e:
            raise SpellRuntimeError(f"{config['handler']}: {e.message}") from e
        except Exception as e:
            raise SpellRuntimeError(f"{config['handler']} failed: {type(e).__name__}: {e}") from e


class HttpRuntime(SpellRuntime):
    kind = "api"
    config_schema = {
        "type": "object",
        "properties": {
            "url": {"type": "string", "pattern": "^https?://"},
            "method": {"type": "string", "enum": ["GET", "POST", "PUT", "PATCH", "DELETE",
                                                   "get", "post", "put", "patch", "delete"]},
            "headers": {"type": "object", "additionalProperties": {"type": "string"}},
            "timeout_sec": {"type": "number", "exclusiveMinimum": 0},
        },
        "required": ["url"],
    }

    def __init__(self, client: httpx.AsyncClient, timeout_sec: float = HTTP_RUNTIME_TIMEOUT_SEC):
        self.client = client
        self.timeout_sec = timeout_sec

    async def run(self, db, spell, inputs):
        config = self.validate_config(spell)
        method = config.get("method", "POST").upper()
        headers = {"Content-Type": "application/json", **(config.get("headers") or {})}
        timeout = float(config.get("timeout_sec", self.timeout_sec))

        try:
            resp = await self.client.request(method, config["url"], json=inputs, headers=headers, timeout=timeout)
        except httpx.TimeoutException as e:
            raise SpellTimeoutError(f"API call timed out after {timeout:g}s") from e
        except httpx.HTTPError as e:
            raise SpellRuntimeError(f"API call failed: {type(e).__name__}: {e}") from e

        if not resp.is_success:
            raise SpellRuntimeError(f"API call failed: {resp.status_code} {resp.reason_phrase}")

        try:
            body = resp.json()
        except ValueError:
            return {"text": resp.text}
        return body if isinstance(body, dict) else {"result": body}


class WasmRuntime(SpellRuntime):
    kind = "wasm-module"
    config_schema = {
        "type": "object",
        "properties": {
            "entry": {"type": "string", "minLength": 1},
            "fuel": {"type": "integer", "minimum": 1},
        },
    }

    def __init__(self, fuel: int = WASM_FUEL, max_output_bytes: int = WASM_MAX_OUTPUT_BYTES):
        self.fuel = fuel
        self.max_output_bytes = max_output_bytes

    async def run(self, db, spell, inputs):
        config = self.validate_config(spell)
        artifact = await latest_artifact(db, spell.spell_id)
        if artifact is None or not artifact.wasm_binary:
            # checked before any instantiation is attempted
            raise SpellRuntimeError("WASM binary not found")

        fuel = min(int(config.get("fuel", self.fuel)), self.fuel)
        try:
            res = await asyncio.to_thread(
                run_module,
                artifact.wasm_binary,
                inputs,
                entry=config.get("entry", "_start"),
                fuel=fuel,
                max_output_bytes=self.max_output_bytes,
            )
        except SandboxLimitExceeded as e:
            raise SpellTimeoutError(str(e)) from e
        except SandboxError as e:
            raise SpellRuntimeError(str(e)) from e

        logger.debug("runtime.wasm_done", spell_key=spell.key, artifact_id=artifact.artifact_id,
                     latency_ms=res["latency_ms"])
        return res["output"]


class RuntimeDispatcher:
    """kind -> runtime. New kinds are registered here; the cast engine never branches on kind."""

    def __init__(self, runtimes: Optional[list] = None):
        self._runtimes: Dict[str, SpellRuntime] = {}
        for rt in runtimes or ():
            self.register(rt)

    def register(self, runtime: SpellRuntime) -> None:
        self._runtimes[runtime.kind] = runtime

    def kinds(self):
        return sorted(self._runtimes)

    async def dispatch(self, db: AsyncSession, spell: Spell, inputs: Dict[str, Any]) -> Dict[str, Any]:
        runtime = self._runtimes.get(spell.runtime)
        if runtime is None:
            raise SpellRuntimeError(f"Unknown runtime type: {spell.runtime}")

        t0 = time.time()
        out = await runtime.run(db, spell, inputs)
        logger.info("runtime.dispatched", spell_key=spell.key, runtime=spell.runtime,
                    latency_ms=int((time.time() - t0) * 1000))
        return out


def build_dispatcher(handlers: HandlerRegistry, http_client: httpx.AsyncClient) -> RuntimeDispatcher:
    return RuntimeDispatcher([
        BuiltinRuntime(handlers),
        HttpRuntime(http_client),
        WasmRuntime(),
    ])
