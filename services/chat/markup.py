"""Parse finished message text into structured display nodes.

The output is a list of JSON-ready dicts, one per block:

    heading     {"type", "level", "children"}
    paragraph   {"type", "children"}
    code        {"type", "language", "code"}
    math        {"type", "display", "tex"}
    list        {"type", "ordered", "start", "items"}      items: list of inline lists
    blockquote  {"type", "children"}                       children: blocks
    table       {"type", "header", "rows"}                 cells: inline lists
    rule        {"type"}

Inline content is a list of text, code and math spans. The parser is a pure
function of its input, so parsing the same text twice gives equal output.
"""

from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

Node = Dict[str, Any]

_BLOCK_OPEN, _BLOCK_CLOSE = "___BLOCK_OPEN___", "___BLOCK_CLOSE___"
_INLINE_OPEN, _INLINE_CLOSE = "___INLINE_OPEN___", "___INLINE_CLOSE___"

_FENCE = re.compile(r"^\s*(`{3,}|~{3,})\s*([\w+#.-]*)\s*$")
_HEADING = re.compile(r"^(#{1,6})\s+(.*?)(?:\s+#+)?\s*$")
_RULE = re.compile(r"^([-*_])(?:\s*\1){2,}$")
_LIST_ITEM = re.compile(r"^\s*([-*+]|\d{1,9}[.)])\s+(.*)$")
_TABLE_SEPARATOR = re.compile(r"^\s*\|?\s*:?-+:?\s*(\|\s*:?-+:?\s*)*\|?\s*$")
_INLINE = re.compile(
	r"(?P<ticks>`+)(?P<code>.+?)(?P=ticks)"
	r"|\$\$(?P<dmath>.+?)\$\$"
	r"|(?<![\\$])\$(?P<math>[^\s$](?:[^$\n]*?[^\s$])?)\$",
	re.S,
)


def preprocess_latex(content: str) -> str:
	"""Rewrite `\\[..\\]` as `$$..$$` and `\\(..\\)` as `$..$`; unpaired delimiters are left alone."""
	processed = (
		content.replace("\\[", _BLOCK_OPEN)
		.replace("\\]", _BLOCK_CLOSE)
		.replace("\\(", _INLINE_OPEN)
		.replace("\\)", _INLINE_CLOSE)
	)
	processed = re.sub(
		f"{_BLOCK_OPEN}([\\s\\S]*?){_BLOCK_CLOSE}",
		lambda m: f"$${m.group(1).strip()}$$",
		processed,
	)
	processed = re.sub(
		f"{_INLINE_OPEN}([\\s\\S]*?){_INLINE_CLOSE}",
		lambda m: f"${m.group(1).strip()}$",
		processed,
	)
	return (
		processed.replace(_BLOCK_OPEN, "\\[")
		.replace(_BLOCK_CLOSE, "\\]")
		.replace(_INLINE_OPEN, "\\(")
		.replace(_INLINE_CLOSE, "\\)")
	)


def parse_markup(text: str) -> List[Node]:
	"""Return the block nodes for `text`."""
	return _parse_blocks(preprocess_latex(text).split("\n"))


def parse_inline(text: str) -> List[Node]:
	"""Split a run of inline text into text, code and math spans."""
	spans: List[Node] = []
	pos = 0
	for match in _INLINE.finditer(text):
		if match.start() > pos:
			spans.append({"type": "text", "text": text[pos:match.start()]})
		if match.group("code") is not None:
			spans.append({"type": "code", "code": match.group("code").strip()})
		elif match.group("dmath") is not None:
			spans.append({"type": "math", "display": True, "tex": match.group("dmath").strip()})
		else:
			spans.append({"type": "math", "display": False, "tex": match.group("math")})
		pos = match.end()
	if pos < len(text):
		spans.append({"type": "text", "text": text[pos:]})
	return spans


def _parse_blocks(lines: List[str]) -> List[Node]:
	blocks: List[Node] = []
	i = 0
	while i < len(lines):
		line = lines[i]
		stripped = line.strip()
		if not stripped:
			i += 1
			continue

		fence = _FENCE.match(line)
		if fence:
			i = _parse_fence(lines, i, fence.group(1), fence.group(2), blocks)
			continue

		if stripped.startswith("$$"):
			i = _parse_display_math(lines, i, blocks)
			continue

		heading = _HEADING.match(stripped)
		if heading:
			blocks.append({"type": "heading", "level": len(heading.group(1)), "children": parse_inline(heading.group(2))})
			i += 1
			continue

		if _RULE.match(stripped):
			blocks.append({"type": "rule"})
			i += 1
			continue

		if stripped.startswith(">"):
			quoted = []
			while i < len(lines) and lines[i].strip().startswith(">"):
				quoted.append(lines[i].strip()[1:].removeprefix(" "))
				i += 1
			blocks.append({"type": "blockquote", "children": _parse_blocks(quoted)})
			continue

		if _starts_table(lines, i):
			i = _parse_table(lines, i, blocks)
			continue

		if _LIST_ITEM.match(line):
			i = _parse_list(lines, i, blocks)
			continue

		paragraph = [line]
		i += 1
		while i < len(lines) and lines[i].strip() and not _starts_block(lines, i):
			paragraph.append(lines[i])
			i += 1
		blocks.append({"type": "paragraph", "children": parse_inline("\n".join(paragraph).strip())})
	return blocks


def _starts_block(lines: List[str], i: int) -> bool:
	stripped = lines[i].strip()
	return bool(
		_FENCE.match(lines[i])
		or stripped.startswith(("$$", ">"))
		or _HEADING.match(stripped)
		or _RULE.match(stripped)
		or _LIST_ITEM.match(lines[i])
		or _starts_table(lines, i)
	)


def _parse_fence(lines: List[str], i: int, marker: str, language: str, blocks: List[Node]) -> int:
	body = []
	i += 1
	while i < len(lines) and not lines[i].strip().startswith(marker):
		body.append(lines[i])
		i += 1
	code = "\n".join(body)
	if language.lower() in ("math", "latex"):
		blocks.append({"type": "math", "display": True, "tex": code.strip()})
	else:
		blocks.append({"type": "code", "language": language or None, "code": code})
	return i + 1


def _parse_display_math(lines: List[str], i: int, blocks: List[Node]) -> int:
	rest = lines[i].strip()[2:]
	if len(rest) >= 2 and rest.endswith("$$"):
		blocks.append({"type": "math", "display": True, "tex": rest[:-2].strip()})
		return i + 1
	body = [rest] if rest else []
	i += 1
	while i < len(lines) and not lines[i].strip().endswith("$$"):
		body.append(lines[i])
		i += 1
	if i < len(lines):
		tail = lines[i].strip()[:-2]
		if tail:
			body.append(tail)
		i += 1
	blocks.append({"type": "math", "display": True, "tex": "\n".join(body).strip()})
	return i


def _starts_table(lines: List[str], i: int) -> bool:
	return (
		"|" in lines[i]
		and i + 1 < len(lines)
		and "-" in lines[i + 1]
		and bool(_TABLE_SEPARATOR.match(lines[i + 1]))
	)


def _split_row(line: str) -> List[str]:
	cells = line.strip()
	if cells.startswith("|"):
		cells = cells[1:]
	if cells.endswith("|"):
		cells = cells[:-1]
	return [cell.strip() for cell in cells.split("|")]


def _parse_table(lines: List[str], i: int, blocks: List[Node]) -> int:
	header = _split_row(lines[i])
	i += 2
	rows = []
	while i < len(lines) and lines[i].strip() and "|" in lines[i]:
		rows.append([parse_inline(cell) for cell in _split_row(lines[i])])
		i += 1
	blocks.append({"type": "table", "header": [parse_inline(cell) for cell in header], "rows": rows})
	return i


def _parse_list(lines: List[str], i: int, blocks: List[Node]) -> int:
	first = _LIST_ITEM.match(lines[i])
	ordered = first.group(1)[0].isdigit()
	start: Optional[int] = int(first.group(1)[:-1]) if ordered else None
	items: List[List[str]] = []
	while i < len(lines):
		item = _LIST_ITEM.match(lines[i])
		if item and item.group(1)[0].isdigit() == ordered:
			items.append([item.group(2)])
		elif item or not lines[i].strip() or not lines[i].startswith((" ", "\t")):
			break
		else:
			# indented continuation of the previous item
			items[-1].append(lines[i].strip())
		i += 1
	blocks.append({
		"type": "list",
		"ordered": ordered,
		"start": start,
		"items": [parse_inline(" ".join(parts)) for parts in items],
	})
	return i
