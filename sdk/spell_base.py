from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict
import jsonschema

@dataclass(frozen=True)
class HandlerMeta:
    handler_id: str
    version: str
    category: str
    deterministic: bool

class SpellHandler:
    """In-process implementation behind a `builtin` spell.

    Subclasses set `meta`, `input_schema`, `output_schema` and implement
    `execute(ctx, inp) -> dict`. Failures propagate as exceptions; the
    builtin runtime turns them into a runtime error for the cast.
    """
    meta: HandlerMeta
    input_schema: Dict[str, Any] = {"type": "object"}
    output_schema: Dict[str, Any] = {"type": "object"}

    def validate_input(self, inp: Dict[str, Any]) -> None:
        jsonschema.validate(instance=inp, schema=self.input_schema)

    def validate_output(self, out: Dict[str, Any]) -> None:
        jsonschema.validate(instance=out, schema=self.output_schema)

    def run(self, ctx: Dict[str, Any], inp: Dict[str, Any]) -> Dict[str, Any]:
        self.validate_input(inp)
        out = self.execute(ctx, inp)
        self.validate_output(out)
        return out

    def execute(self, ctx: Dict[str, Any], inp: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError
