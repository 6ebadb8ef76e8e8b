from sdk.spell_base import SpellHandler, HandlerMeta
import json

class JsonExtractHandler(SpellHandler):
    """Pull every top-level JSON object embedded in free text."""
    meta = HandlerMeta("json_extract", "1.1.0", "Data", True)

    input_schema = {
        "type": "object",
        "properties": {"text": {"type": "string", "minLength": 1}},
        "required": ["text"],
        "additionalProperties": False,
    }

    output_schema = {
        "type": "object",
        "properties": {"objects": {"type": "array", "items": {"type": "object"}}},
        "required": ["objects"],
    }

    def execute(self, ctx, inp):
        text = inp["text"]
        decoder = json.JSONDecoder()
        found = []
        idx = text.find("{")
        while idx != -1:
            try:
                obj, end = decoder.raw_decode(text, idx)
            except json.JSONDecodeError:
                idx = text.find("{", idx + 1)
                continue
            if isinstance(obj, dict):
                found.append(obj)
            idx = text.find("{", end)
        return {"objects": found}
