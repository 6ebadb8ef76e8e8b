from types import SimpleNamespace

import httpx
import pytest
import wasmtime

from api.errors import SpellRuntimeError, SpellTimeoutError
from api.runtimes import BuiltinRuntime, HttpRuntime, RuntimeDispatcher, WasmRuntime
from db.spell_db import latest_artifact, save_artifact
from sdk.handler_registry import default_registry

ECHO_WAT = r'''
(module
  (import "wasi_snapshot_preview1" "fd_write" (func $fd_write (param i32 i32 i32 i32) (result i32)))
  (memory (export "memory") 1)
  (data (i32.const 16) "{\"echo\":true}")
  (func (export "_start")
    (i32.store (i32.const 0) (i32.const 16))
    (i32.store (i32.const 4) (i32.const 13))
    (drop (call $fd_write (i32.const 1) (i32.const 0) (i32.const 1) (i32.const 100)))))
'''

SPIN_WAT = '''
(module
  (memory (export "memory") 1)
  (func (export "_start") (loop $spin (br $spin))))
'''


def spell(runtime, config, key="s1"):
    return SimpleNamespace(key=key, version=1, runtime=runtime, config=config, spell_id="sp-1")


def http_runtime(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpRuntime(client, timeout_sec=5)


class TestDispatcher:
    """Kind -> runtime routing."""

    @pytest.mark.asyncio
    async def test_builtin_echo(self):
        d = RuntimeDispatcher([BuiltinRuntime(default_registry())])
        out = await d.dispatch(None, spell("builtin", {"handler": "echo"}), {"msg": "hi"})
        assert out == {"echo": {"msg": "hi"}, "spell_key": "s1"}

    @pytest.mark.asyncio
    async def test_builtin_clean_text(self):
        d = RuntimeDispatcher([BuiltinRuntime(default_registry())])
        out = await d.dispatch(None, spell("builtin", {"handler": "clean_text"}), {"text": "  Hello\x00  World "})
        assert out["cleaned"] == "Hello World"

    @pytest.mark.asyncio
    async def test_unknown_kind(self):
        d = RuntimeDispatcher([BuiltinRuntime(default_registry())])
        with pytest.raises(SpellRuntimeError, match="Unknown runtime type"):
            await d.dispatch(None, spell("api", {"url": "https://x"}), {})

    @pytest.mark.asyncio
    async def test_unknown_handler(self):
        d = RuntimeDispatcher([BuiltinRuntime(default_registry())])
        with pytest.raises(SpellRuntimeError, match="Unknown builtin handler"):
            await d.dispatch(None, spell("builtin", {"handler": "nope"}), {})

    @pytest.mark.asyncio
    async def test_invalid_config(self):
        d = RuntimeDispatcher([BuiltinRuntime(default_registry())])
        with pytest.raises(SpellRuntimeError, match="Invalid builtin runtime config"):
            await d.dispatch(None, spell("builtin", {}), {})

    @pytest.mark.asyncio
    async def test_handler_input_validation(self):
        d = RuntimeDispatcher([BuiltinRuntime(default_registry())])
        with pytest.raises(SpellRuntimeError):
            await d.dispatch(None, spell("builtin", {"handler": "clean_text"}), {"text": 42})

    def test_register_new_kind(self):
        class Static:
            kind = "static"

            async def run(self, db, spell, inputs):
                return {"static": True}

        d = RuntimeDispatcher()
        d.register(Static())
        assert d.kinds() == ["static"]


class TestHttpRuntime:
    """Outbound API-backed spells."""

    @pytest.mark.asyncio
    async def test_posts_input_and_returns_json(self):
        seen = {}

        def handler(request):
            seen["method"] = request.method
            seen["auth"] = request.headers.get("x-api-key")
            seen["body"] = request.content
            return httpx.Response(200, json={"answer": 42})

        rt = http_runtime(handler)
        out = await rt.run(None, spell("api", {"url": "https://example.test/run", "headers": {"x-api-key": "k"}}),
                           {"q": 1})
        assert out == {"answer": 42}
        assert seen["method"] == "POST"
        assert seen["auth"] == "k"
        assert seen["body"] == b'{"q":1}' or seen["body"] == b'{"q": 1}'

    @pytest.mark.asyncio
    async def test_non_2xx_surfaces_status(self):
        rt = http_runtime(lambda request: httpx.Response(502))
        with pytest.raises(SpellRuntimeError, match="API call failed: 502 Bad Gateway"):
            await rt.run(None, spell("api", {"url": "https://example.test"}), {})

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        rt = http_runtime(handler)
        with pytest.raises(SpellTimeoutError):
            await rt.run(None, spell("api", {"url": "https://example.test"}), {})

    @pytest.mark.asyncio
    async def test_network_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        rt = http_runtime(handler)
        with pytest.raises(SpellRuntimeError) as exc:
            await rt.run(None, spell("api", {"url": "https://example.test"}), {})
        assert not isinstance(exc.value, SpellTimeoutError)

    @pytest.mark.asyncio
    async def test_text_body(self):
        rt = http_runtime(lambda request: httpx.Response(200, text="plain"))
        out = await rt.run(None, spell("api", {"url": "https://example.test", "method": "get"}), {})
        assert out == {"text": "plain"}

    @pytest.mark.asyncio
    async def test_rejects_non_http_url(self):
        rt = http_runtime(lambda request: httpx.Response(200))
        with pytest.raises(SpellRuntimeError, match="Invalid api runtime config"):
            await rt.run(None, spell("api", {"url": "file:///etc/passwd"}), {})


class TestWasmRuntime:
    """Sandboxed module spells."""

    @pytest.mark.asyncio
    async def test_missing_artifact(self, db, make_spell):
        s = await make_spell(key="wasm", runtime="wasm-module", config={})
        with pytest.raises(SpellRuntimeError, match="WASM binary not found"):
            await WasmRuntime().run(db, s, {})

    @pytest.mark.asyncio
    async def test_runs_module_and_parses_stdout(self, db, make_spell):
        s = await make_spell(key="wasm", runtime="wasm-module", config={})
        await save_artifact(db, s, "u1", wasmtime.wat2wasm(ECHO_WAT))
        await db.commit()

        out = await WasmRuntime().run(db, s, {"x": 1})
        assert out == {"echo": True}

    @pytest.mark.asyncio
    async def test_latest_upload_wins_within_same_second(self, db, make_spell, monkeypatch):
        monkeypatch.setattr("db.spell_db.now", lambda: 1_700_000_000)
        s = await make_spell(key="wasm", runtime="wasm-module", config={})
        first = await save_artifact(db, s, "u1", wasmtime.wat2wasm(SPIN_WAT))
        second = await save_artifact(db, s, "u1", wasmtime.wat2wasm(ECHO_WAT))
        await db.commit()

        assert (first.revision, second.revision) == (1, 2)
        assert (await latest_artifact(db, s.spell_id)).artifact_id == second.artifact_id
        assert await WasmRuntime().run(db, s, {}) == {"echo": True}

    @pytest.mark.asyncio
    async def test_fuel_exhaustion_is_timeout(self, db, make_spell):
        s = await make_spell(key="spin", runtime="wasm-module", config={})
        await save_artifact(db, s, "u1", wasmtime.wat2wasm(SPIN_WAT))
        await db.commit()

        with pytest.raises(SpellTimeoutError):
            await WasmRuntime(fuel=10_000).run(db, s, {})

    @pytest.mark.asyncio
    async def test_rejects_non_wasm_upload(self, db, make_spell):
        s = await make_spell(key="wasm", runtime="wasm-module", config={})
        with pytest.raises(ValueError, match="magic"):
            await save_artifact(db, s, "u1", b"MZ\x90\x00not wasm")
