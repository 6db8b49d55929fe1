"""Editor-backed tools: symbols, navigation, hover, call hierarchy, rename.

These delegate to the session's ``EditorBridge``. Bridge errors (including
``EditorUnavailableError``) become ``"<Action> failed: <reason>"`` results.
"""

import time
import uuid
from collections import OrderedDict
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from ..editor import CallHierarchyItem, DocumentSymbol, Location, symbol_kind_name
from ..errors import CodeAgentError
from ..context_management import limit_tool_output
from ..revert import FileSnapshot
from .file_tools import doc_lines, position_offset, read_file_text, write_file_text
from .registry import ToolContext, arg_int, arg_str, clamp

CALL_HIERARCHY_CACHE_LIMIT = 200


def _error(action: str, exc: BaseException) -> str:
    return f"{action} failed: {exc}"


def _position(args: Dict[str, Any]) -> Tuple[int, int]:
    return max(1, arg_int(args, "line", 1)), max(1, arg_int(args, "character", 1))


def _target(ctx: ToolContext, args: Dict[str, Any]) -> Optional[Path]:
    return ctx.workspace.resolve(args.get("uri") or args.get("path"))


def _format_location(ctx: ToolContext, loc: Location) -> str:
    return f"{ctx.workspace.relpath(loc.path)}:{loc.line}:{loc.character}"


def _format_symbol_tree(symbols: List[DocumentSymbol], depth: int = 0) -> List[str]:
    out = []
    for sym in symbols:
        out.append(f"{'  ' * depth}- {sym.name} ({symbol_kind_name(sym.kind)})")
        if sym.children:
            out.extend(_format_symbol_tree(sym.children, depth + 1))
    return out


def _flatten(symbols: List[DocumentSymbol]) -> List[DocumentSymbol]:
    out = []
    for sym in symbols:
        out.append(sym)
        out.extend(_flatten(sym.children))
    return out


# ── Symbols ──────────────────────────────────────────────────────

async def search_symbols(ctx: ToolContext, args: Dict[str, Any]) -> str:
    query = arg_str(args, "query")
    if not query:
        return "Search symbols failed: query is required."
    max_results = clamp(arg_int(args, "maxResults") or 20, 1, 50)
    try:
        found = await ctx.editor.workspace_symbols(query)
    except CodeAgentError as e:
        return _error("Search symbols", e)
    if not found:
        return "Search symbols: no matches."
    lines = []
    for sym in found[:max_results]:
        container = f" ({sym.container})" if sym.container else ""
        where = ""
        if sym.location is not None:
            where = f" - {ctx.workspace.relpath(sym.location.path)}:{sym.location.line}"
        lines.append(f"{symbol_kind_name(sym.kind)} {sym.name}{container}{where}")
    return f"Search symbols ({len(lines)}):\n" + "\n".join(lines)


async def workspace_symbols(ctx: ToolContext, args: Dict[str, Any]) -> str:
    return await search_symbols(ctx, args)


async def document_symbols(ctx: ToolContext, args: Dict[str, Any]) -> str:
    full = _target(ctx, args)
    if full is None:
        return "Document symbols failed: invalid or out-of-workspace path."
    try:
        symbols = await ctx.editor.document_symbols(full)
    except CodeAgentError as e:
        return _error("Document symbols", e)
    if not symbols:
        return "Document symbols: no matches."
    tree = _format_symbol_tree(symbols)
    return f"Document symbols ({len(tree)}):\n" + "\n".join(tree)


async def read_file_range_by_symbols(ctx: ToolContext, args: Dict[str, Any]) -> str:
    full = ctx.workspace.resolve(args.get("path"))
    if full is None:
        return "Read by symbols failed: invalid or out-of-workspace path."
    raw = args.get("symbols")
    if isinstance(raw, list):
        names = [str(s).strip() for s in raw if str(s or "").strip()]
    else:
        names = [s.strip() for s in str(raw or "").split(",") if s.strip()]
    if not names:
        return "Read by symbols failed: symbols list is required."
    max_chars = clamp(arg_int(args, "maxChars") or 12000, 500, 50000)

    try:
        flat = _flatten(await ctx.editor.document_symbols(full) or [])
        text = await read_file_text(full)
    except (CodeAgentError, OSError) as e:
        return _error("Read by symbols", e)
    if not flat:
        return "Read by symbols: no symbols found in file."

    lines = doc_lines(text)
    results = []
    for name in names:
        matches = [s for s in flat if s.name == name] or [s for s in flat if s.name.lower() == name.lower()]
        if not matches:
            results.append(f'Symbol "{name}": not found.')
            continue
        for sym in matches:
            body = "\n".join(lines[sym.start_line - 1:sym.end_line])
            header = f"{symbol_kind_name(sym.kind)} {sym.name} (lines {sym.start_line}-{sym.end_line})"
            results.append(f"{header}\n{body}")
    return limit_tool_output("\n\n".join(results), max_chars)


# ── Navigation ───────────────────────────────────────────────────

async def _locations(ctx: ToolContext, args: Dict[str, Any], action: str, label: str, query) -> str:
    full = _target(ctx, args)
    if full is None:
        return f"{action} failed: invalid or out-of-workspace path."
    line, character = _position(args)
    try:
        found = await query(full, line, character)
    except CodeAgentError as e:
        return _error(action, e)
    if not found:
        return f"{label}: no matches."
    listing = [_format_location(ctx, loc) for loc in found]
    return f"{label} ({len(listing)}):\n" + "\n".join(listing)


async def definition(ctx: ToolContext, args: Dict[str, Any]) -> str:
    return await _locations(ctx, args, "Definition", "Definition", ctx.editor.definition)


async def type_definition(ctx: ToolContext, args: Dict[str, Any]) -> str:
    return await _locations(ctx, args, "Type definition", "Type definition", ctx.editor.type_definition)


async def implementation(ctx: ToolContext, args: Dict[str, Any]) -> str:
    return await _locations(ctx, args, "Implementation", "Implementation", ctx.editor.implementation)


async def references(ctx: ToolContext, args: Dict[str, Any]) -> str:
    include_declaration = args.get("includeDeclaration") is not False

    async def query(path, line, character):
        return await ctx.editor.references(path, line, character, include_declaration)

    return await _locations(ctx, args, "References", "References", query)


async def hover(ctx: ToolContext, args: Dict[str, Any]) -> str:
    full = _target(ctx, args)
    if full is None:
        return "Hover failed: invalid or out-of-workspace path."
    line, character = _position(args)
    try:
        contents = await ctx.editor.hover(full, line, character)
    except CodeAgentError as e:
        return _error("Hover", e)
    if not contents:
        return "Hover: no matches."
    text = "\n".join(c for c in contents if c).strip()
    return f"Hover:\n{text}" if text else "Hover: no text."


async def signature_help(ctx: ToolContext, args: Dict[str, Any]) -> str:
    full = _target(ctx, args)
    if full is None:
        return "Signature help failed: invalid or out-of-workspace path."
    line, character = _position(args)
    try:
        sig = await ctx.editor.signature_help(full, line, character)
    except CodeAgentError as e:
        return _error("Signature help", e)
    if not sig:
        return "Signature help: no matches."
    label = sig.get("label") or "Signature"
    doc = sig.get("documentation") or ""
    return f"Signature:\n{label}\n" + (f"\n{doc}" if doc else "")


# ── Call hierarchy ───────────────────────────────────────────────

def _format_item(ctx: ToolContext, item: CallHierarchyItem) -> str:
    return f"{symbol_kind_name(item.kind)} {item.name} - {ctx.workspace.relpath(item.path)}:{item.line}"


async def call_hierarchy_prepare(ctx: ToolContext, args: Dict[str, Any]) -> str:
    full = _target(ctx, args)
    if full is None:
        return "Call hierarchy prepare failed: invalid or out-of-workspace path."
    line, character = _position(args)
    try:
        items = await ctx.editor.prepare_call_hierarchy(full, line, character)
    except CodeAgentError as e:
        return _error("Call hierarchy prepare", e)
    if not items:
        return "Call hierarchy: no matches."
    listing = []
    for item in items:
        item_id = f"chi_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"
        ctx.call_hierarchy[item_id] = item
        listing.append(f"{item_id} | {_format_item(ctx, item)}")
    while len(ctx.call_hierarchy) > CALL_HIERARCHY_CACHE_LIMIT:
        ctx.call_hierarchy.pop(next(iter(ctx.call_hierarchy)))
    return f"Call hierarchy items ({len(listing)}):\n" + "\n".join(listing)


async def _calls(ctx: ToolContext, args: Dict[str, Any], direction: str) -> str:
    action = f"Call hierarchy {direction}"
    item_id = arg_str(args, "itemId", "id")
    if not item_id:
        return f"{action} failed: itemId is required."
    item = ctx.call_hierarchy.get(item_id)
    if item is None:
        return f"{action} failed: item not found (prepare first)."
    query = ctx.editor.incoming_calls if direction == "incoming" else ctx.editor.outgoing_calls
    try:
        calls = await query(item)
    except CodeAgentError as e:
        return _error(action, e)
    if not calls:
        return f"{action}: no matches."
    listing = [_format_item(ctx, c) for c in calls]
    return f"{action} ({len(listing)}):\n" + "\n".join(listing)


async def call_hierarchy_incoming(ctx: ToolContext, args: Dict[str, Any]) -> str:
    return await _calls(ctx, args, "incoming")


async def call_hierarchy_outgoing(ctx: ToolContext, args: Dict[str, Any]) -> str:
    return await _calls(ctx, args, "outgoing")


# ── Rename ───────────────────────────────────────────────────────

async def rename_prepare(ctx: ToolContext, args: Dict[str, Any]) -> str:
    full = _target(ctx, args)
    if full is None:
        return "Rename prepare failed: invalid or out-of-workspace path."
    line, character = _position(args)
    try:
        rng = await ctx.editor.prepare_rename(full, line, character)
    except CodeAgentError as e:
        return _error("Rename prepare", e)
    if rng is None:
        return "Rename prepare: no rename available."
    placeholder = f'placeholder="{rng.placeholder}"' if rng.placeholder else ""
    return (f"Rename prepare: range {rng.start_line}:{rng.start_character}-"
            f"{rng.end_line}:{rng.end_character} {placeholder}").strip()


async def rename_apply(ctx: ToolContext, args: Dict[str, Any]) -> str:
    new_name = arg_str(args, "newName")
    if not new_name:
        return "Rename apply failed: newName is required."
    full = _target(ctx, args)
    if full is None:
        return "Rename apply failed: invalid or out-of-workspace path."
    line, character = _position(args)
    try:
        edits = await ctx.editor.rename(full, line, character, new_name)
    except CodeAgentError as e:
        return _error("Rename apply", e)
    if not edits:
        return "Rename apply: no edit returned."

    by_file: "OrderedDict[Path, list]" = OrderedDict()
    for edit in edits:
        target = ctx.workspace.resolve(str(edit.path))
        if target is None:
            return "Rename apply failed: edit targets a path outside the workspace."
        by_file.setdefault(target, []).append(edit)

    approved = await ctx.confirm(
        "Apply rename?",
        [f"New name: {new_name}", f"Files: {len(by_file)}", f"Edits: {len(edits)}"],
        "Apply", "Cancel",
    )
    if not approved:
        return "Rename canceled by user."

    snapshots = []
    for path, file_edits in by_file.items():
        snapshot = FileSnapshot.capture(path)
        text = snapshot.content
        spans = []
        for edit in file_edits:
            start = position_offset(text, edit.start_line, edit.start_character)[0]
            end = position_offset(text, edit.end_line, edit.end_character)[0]
            spans.append((start, end, edit.new_text))
        # apply back to front so earlier offsets stay valid
        for start, end, new_text in sorted(spans, key=lambda s: s[0], reverse=True):
            text = text[:start] + new_text + text[end:]
        await write_file_text(path, text)
        snapshots.append(snapshot)

    files = ", ".join(ctx.workspace.relpath(p) for p in by_file)
    return f"Rename applied ({len(edits)} edit(s) in {files}).{ctx.commit_revert(snapshots)}"


async def semantic_tokens(ctx: ToolContext, args: Dict[str, Any]) -> str:
    full = _target(ctx, args)
    if full is None:
        return "Semantic tokens failed: invalid or out-of-workspace path."
    rng = args.get("range") if isinstance(args.get("range"), dict) else None
    start_line = arg_int(rng, "startLine") if rng else None
    end_line = arg_int(rng, "endLine") if rng else None
    try:
        data = await ctx.editor.semantic_tokens(full, start_line, end_line)
    except CodeAgentError as e:
        return _error("Semantic tokens", e)
    if not data:
        return "Semantic tokens: no data."
    return f"Semantic tokens: {len(data)} integers."


HANDLERS = {
    "search_symbols": search_symbols,
    "workspace_symbols": workspace_symbols,
    "document_symbols": document_symbols,
    "read_file_range_by_symbols": read_file_range_by_symbols,
    "definition": definition,
    "type_definition": type_definition,
    "implementation": implementation,
    "references": references,
    "hover": hover,
    "signature_help": signature_help,
    "call_hierarchy_prepare": call_hierarchy_prepare,
    "call_hierarchy_incoming": call_hierarchy_incoming,
    "call_hierarchy_outgoing": call_hierarchy_outgoing,
    "rename_prepare": rename_prepare,
    "rename_apply": rename_apply,
    "semantic_tokens": semantic_tokens,
}
