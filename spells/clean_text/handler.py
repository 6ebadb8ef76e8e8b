from sdk.spell_base import SpellHandler, HandlerMeta
import re
import unicodedata

CONTROL = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")

class CleanTextHandler(SpellHandler):
    meta = HandlerMeta("clean_text", "1.1.0", "Data", True)

    input_schema = {
        "type": "object",
        "properties": {
            "text": {"type": "string", "minLength": 1},
            "lowercase": {"type": "boolean"},
        },
        "required": ["text"],
        "additionalProperties": False,
    }

    output_schema = {
        "type": "object",
        "properties": {"cleaned": {"type": "string"}, "chars_removed": {"type": "integer"}},
        "required": ["cleaned", "chars_removed"],
    }

    def execute(self, ctx, inp):
        raw = inp["text"]
        text = unicodedata.normalize("NFKC", raw)
        text = CONTROL.sub("", text)
        text = re.sub(r"\s+", " ", text).strip()
        if inp.get("lowercase"):
            text = text.lower()
        return {"cleaned": text, "chars_removed": max(len(raw) - len(text), 0)}
