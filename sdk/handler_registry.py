from __future__ import annotations
from typing import Dict, Iterable, List, Optional

from sdk.spell_base import SpellHandler

class HandlerRegistry:
    """Named builtin handlers. Built once at startup and passed to the builtin runtime."""

    def __init__(self, handlers: Optional[Iterable[SpellHandler]] = None):
        self._handlers: Dict[str, SpellHandler] = {}
        for h in handlers or ():
            self.register(h)

    def register(self, handler: SpellHandler, name: Optional[str] = None) -> None:
        key = name or handler.meta.handler_id
        if key in self._handlers:
            raise ValueError(f"handler already registered: {key}")
        self._handlers[key] = handler

    def get(self, name: str) -> Optional[SpellHandler]:
        return self._handlers.get(name)

    def names(self) -> List[str]:
        return sorted(self._handlers)

    def __contains__(self, name: str) -> bool:
        return name in self._handlers

def default_registry() -> HandlerRegistry:
    from spells.clean_text.handler import CleanTextHandler
    from spells.echo.handler import EchoHandler
    from spells.json_extract.handler import JsonExtractHandler
    from spells.keyword_extract.handler import KeywordExtractHandler
    from spells.pii_redactor.handler import PiiRedactorHandler

    return HandlerRegistry([
        EchoHandler(),
        CleanTextHandler(),
        KeywordExtractHandler(),
        PiiRedactorHandler(),
        JsonExtractHandler(),
    ])
