from sdk.spell_base import SpellHandler, HandlerMeta
import re
from collections import Counter

STOPWORDS = frozenset(
    "the a an and or but is are was were be to of in on for with this that it as at by from "
    "not no so if then than into over".split()
)
WORD = re.compile(r"[a-z0-9']{2,}")

class KeywordExtractHandler(SpellHandler):
    meta = HandlerMeta("keyword_extract", "1.1.0", "Reasoning", True)

    input_schema = {
        "type": "object",
        "properties": {
            "text": {"type": "string", "minLength": 1},
            "top_k": {"type": "integer", "minimum": 1, "maximum": 50},
        },
        "required": ["text"],
        "additionalProperties": False,
    }

    output_schema = {
        "type": "object",
        "properties": {
            "keywords": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {"word": {"type": "string"}, "count": {"type": "integer"}},
                    "required": ["word", "count"],
                },
            }
        },
        "required": ["keywords"],
    }

    def execute(self, ctx, inp):
        words = [w for w in WORD.findall(inp["text"].lower()) if w not in STOPWORDS]
        ranked = Counter(words).most_common(inp.get("top_k", 10))
        return {"keywords": [{"word": w, "count": n} for w, n in ranked]}
