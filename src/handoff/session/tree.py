"""
Context Tree - hierarchical shared state addressed by dot-separated paths.

The tree is made of two node kinds: MapNode (keyed children) and LeafNode
(a scalar or a sequence). Mappings written into the tree become MapNodes,
so `set("a", {"b": 1})` and `set("a.b", 1)` produce the same structure.
Reads return plain Python values (dicts for subtrees) that are copies;
mutating them never touches the tree.
"""

import copy
from dataclasses import dataclass, field
from typing import Any, Iterator, Union

from ..errors import ValidationError


@dataclass
class LeafNode:
	"""A terminal value: scalar or sequence."""
	value: Any = None

	def to_value(self) -> Any:
		return copy.deepcopy(self.value)


@dataclass
class MapNode:
	"""A level of the tree with uniquely keyed children."""
	children: dict[str, "Node"] = field(default_factory=dict)

	def to_value(self) -> dict[str, Any]:
		return {key: child.to_value() for key, child in self.children.items()}


Node = Union[MapNode, LeafNode]


def build_node(value: Any) -> Node:
	"""Convert a plain value into a node, recursing into mappings."""
	if isinstance(value, MapNode | LeafNode):
		return copy.deepcopy(value)
	if isinstance(value, dict):
		return MapNode({str(k): build_node(v) for k, v in value.items()})
	if isinstance(value, tuple):
		value = list(value)
	return LeafNode(copy.deepcopy(value))


def split_path(path: str) -> list[str]:
	"""Split a dot path, rejecting empty segments."""
	if not isinstance(path, str) or not path:
		raise ValidationError("Context path must be a non-empty string", path=path)
	parts = path.split(".")
	if any(part == "" for part in parts):
		raise ValidationError(f"Invalid context path: {path!r}", path=path)
	return parts


class ContextTree:
	"""Path-addressed tree of MapNode / LeafNode."""

	def __init__(self, root: MapNode | None = None):
		self.root = root or MapNode()

	@classmethod
	def from_dict(cls, data: dict[str, Any] | None) -> "ContextTree":
		node = build_node(data or {})
		if not isinstance(node, MapNode):
			raise ValidationError("Context root must be a mapping")
		return cls(node)

	def to_dict(self) -> dict[str, Any]:
		return self.root.to_value()

	def copy(self) -> "ContextTree":
		return ContextTree(copy.deepcopy(self.root))

	def _find(self, parts: list[str]) -> Node | None:
		node: Node = self.root
		for part in parts:
			if not isinstance(node, MapNode):
				return None
			child = node.children.get(part)
			if child is None:
				return None
			node = child
		return node

	def get(self, path: str, default: Any = None) -> Any:
		"""Return a copy of the value at path, or default when absent."""
		node = self._find(split_path(path))
		if node is None:
			return default
		return node.to_value()

	def has(self, path: str) -> bool:
		return self._find(split_path(path)) is not None

	def set(self, path: str, value: Any) -> None:
		"""Write value at path, creating map levels (and replacing leaves) on the way."""
		parts = split_path(path)
		parent = self.root
		for part in parts[:-1]:
			child = parent.children.get(part)
			if not isinstance(child, MapNode):
				child = MapNode()
				parent.children[part] = child
			parent = child
		parent.children[parts[-1]] = build_node(value)

	def append(self, path: str, value: Any) -> list[Any]:
		"""Append to the sequence at path (created when absent)."""
		node = self._find(split_path(path))
		if node is None:
			items: list[Any] = []
		elif isinstance(node, LeafNode) and isinstance(node.value, list):
			items = node.value
		else:
			raise ValidationError(f"Cannot append to non-sequence at path: {path}", path=path)
		items = [*items, copy.deepcopy(value)]
		self.set(path, items)
		return items

	def merge(self, path: str, mapping: dict[str, Any]) -> None:
		"""Shallow-merge mapping into the subtree at path (created when absent)."""
		if not isinstance(mapping, dict):
			raise ValidationError("merge() requires a mapping", path=path)
		node = self._find(split_path(path))
		if node is None:
			self.set(path, mapping)
			return
		if not isinstance(node, MapNode):
			raise ValidationError(f"Cannot merge into non-mapping at path: {path}", path=path)
		for key, value in mapping.items():
			node.children[str(key)] = build_node(value)

	def delete(self, path: str) -> bool:
		parts = split_path(path)
		parent = self._find(parts[:-1]) if len(parts) > 1 else self.root
		if not isinstance(parent, MapNode) or parts[-1] not in parent.children:
			return False
		del parent.children[parts[-1]]
		return True

	def paths(self) -> Iterator[str]:
		"""Yield the dot path of every leaf."""
		def walk(node: MapNode, prefix: str) -> Iterator[str]:
			for key, child in node.children.items():
				path = f"{prefix}.{key}" if prefix else key
				if isinstance(child, MapNode):
					yield from walk(child, path)
				else:
					yield path

		yield from walk(self.root, "")
