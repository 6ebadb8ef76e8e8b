from sdk.spell_base import SpellHandler, HandlerMeta
import re

PATTERNS = {
    "email": re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}"),
    "card": re.compile(r"\b(?:\d[ -]?){13,16}\b"),
    "phone": re.compile(r"\+?\d[\d\s\-]{7,}\d"),
}

class PiiRedactorHandler(SpellHandler):
    meta = HandlerMeta("pii_redactor", "1.1.0", "Governance", True)

    input_schema = {
        "type": "object",
        "properties": {"text": {"type": "string", "minLength": 1}},
        "required": ["text"],
        "additionalProperties": False,
    }

    output_schema = {
        "type": "object",
        "properties": {
            "redacted": {"type": "string"},
            "counts": {"type": "object", "additionalProperties": {"type": "integer"}},
        },
        "required": ["redacted", "counts"],
    }

    def execute(self, ctx, inp):
        text = inp["text"]
        counts = {}
        # card before phone: long digit runs would otherwise match as phone numbers
        for label, pattern in PATTERNS.items():
            text, n = pattern.subn(f"[REDACTED_{label.upper()}]", text)
            counts[label] = n
        return {"redacted": text, "counts": counts}
