"""Editor capability interface.

Language intelligence (symbols, definitions, hover, call hierarchy,
rename, semantic tokens, diagnostics) comes from whatever editor or
language server hosts the agent. The agent only talks to this
interface. ``NullEditorBridge`` is used when nothing is attached: every
query raises ``EditorUnavailableError`` except ``diagnostics``, which
reports no problems so the deferred verification step stays quiet.

All line and character numbers here are 1-based.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from .errors import EditorUnavailableError

SYMBOL_KIND_NAMES = [
    "File", "Module", "Namespace", "Package", "Class", "Method", "Property",
    "Field", "Constructor", "Enum", "Interface", "Function", "Variable",
    "Constant", "String", "Number", "Boolean", "Array", "Object", "Key",
    "Null", "EnumMember", "Struct", "Event", "Operator", "TypeParameter",
]


def symbol_kind_name(kind) -> str:
    if isinstance(kind, str) and kind:
        return kind
    if isinstance(kind, int) and 0 <= kind < len(SYMBOL_KIND_NAMES):
        return SYMBOL_KIND_NAMES[kind]
    return "Symbol"


@dataclass
class Location:
    path: Path
    line: int
    character: int = 1
    end_line: Optional[int] = None
    end_character: Optional[int] = None


@dataclass
class SymbolInfo:
    name: str
    kind: object
    location: Optional[Location] = None
    container: str = ""


@dataclass
class DocumentSymbol:
    name: str
    kind: object
    start_line: int
    end_line: int
    children: List["DocumentSymbol"] = field(default_factory=list)


@dataclass
class CallHierarchyItem:
    name: str
    kind: object
    path: Path
    line: int


@dataclass
class RenameRange:
    start_line: int
    start_character: int
    end_line: int
    end_character: int
    placeholder: str = ""


@dataclass
class TextEdit:
    """Replace ``[start, end)`` in ``path`` with ``new_text``."""
    path: Path
    start_line: int
    start_character: int
    end_line: int
    end_character: int
    new_text: str


@dataclass
class Diagnostic:
    path: Path
    line: int
    character: int
    severity: str
    message: str
    code: str = ""
    source: str = ""


class EditorBridge(ABC):
    """Language features the editor-backed tools delegate to."""

    @abstractmethod
    async def workspace_symbols(self, query: str) -> List[SymbolInfo]: ...

    @abstractmethod
    async def document_symbols(self, path: Path) -> List[DocumentSymbol]: ...

    @abstractmethod
    async def definition(self, path: Path, line: int, character: int) -> List[Location]: ...

    @abstractmethod
    async def type_definition(self, path: Path, line: int, character: int) -> List[Location]: ...

    @abstractmethod
    async def implementation(self, path: Path, line: int, character: int) -> List[Location]: ...

    @abstractmethod
    async def references(self, path: Path, line: int, character: int,
                         include_declaration: bool = True) -> List[Location]: ...

    @abstractmethod
    async def hover(self, path: Path, line: int, character: int) -> List[str]: ...

    @abstractmethod
    async def signature_help(self, path: Path, line: int, character: int) -> Optional[dict]:
        """``{"label": str, "documentation": str}`` for the active signature."""

    @abstractmethod
    async def prepare_call_hierarchy(self, path: Path, line: int, character: int) -> List[CallHierarchyItem]: ...

    @abstractmethod
    async def incoming_calls(self, item: CallHierarchyItem) -> List[CallHierarchyItem]: ...

    @abstractmethod
    async def outgoing_calls(self, item: CallHierarchyItem) -> List[CallHierarchyItem]: ...

    @abstractmethod
    async def prepare_rename(self, path: Path, line: int, character: int) -> Optional[RenameRange]: ...

    @abstractmethod
    async def rename(self, path: Path, line: int, character: int, new_name: str) -> List[TextEdit]:
        """Edits for a rename. The caller applies them (after approval)."""

    @abstractmethod
    async def semantic_tokens(self, path: Path, start_line: Optional[int] = None,
                              end_line: Optional[int] = None) -> List[int]: ...

    @abstractmethod
    async def diagnostics(self) -> List[Diagnostic]: ...


class NullEditorBridge(EditorBridge):
    """No editor attached."""

    def _unavailable(self):
        raise EditorUnavailableError("editor features are not available in this session")

    async def workspace_symbols(self, query):
        self._unavailable()

    async def document_symbols(self, path):
        self._unavailable()

    async def definition(self, path, line, character):
        self._unavailable()

    async def type_definition(self, path, line, character):
        self._unavailable()

    async def implementation(self, path, line, character):
        self._unavailable()

    async def references(self, path, line, character, include_declaration=True):
        self._unavailable()

    async def hover(self, path, line, character):
        self._unavailable()

    async def signature_help(self, path, line, character):
        self._unavailable()

    async def prepare_call_hierarchy(self, path, line, character):
        self._unavailable()

    async def incoming_calls(self, item):
        self._unavailable()

    async def outgoing_calls(self, item):
        self._unavailable()

    async def prepare_rename(self, path, line, character):
        self._unavailable()

    async def rename(self, path, line, character, new_name):
        self._unavailable()

    async def semantic_tokens(self, path, start_line=None, end_line=None):
        self._unavailable()

    async def diagnostics(self):
        return []
