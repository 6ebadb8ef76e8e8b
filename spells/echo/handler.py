from sdk.spell_base import SpellHandler, HandlerMeta

class EchoHandler(SpellHandler):
    meta = HandlerMeta("echo", "1.0.0", "Utility", True)

    input_schema = {"type": "object"}

    output_schema = {
        "type": "object",
        "properties": {"echo": {"type": "object"}, "spell_key": {"type": "string"}},
        "required": ["echo"],
    }

    def execute(self, ctx, inp):
        return {"echo": dict(inp), "spell_key": ctx.get("spell_key", "")}
