"""Tests for the context tree."""

import pytest

from handoff.errors import ValidationError
from handoff.session.tree import ContextTree, LeafNode, MapNode


class TestContextTree:
	"""Path-addressed reads and writes."""

	def test_set_creates_intermediate_maps(self):
		"""Writing a deep path creates map levels on the way."""
		tree = ContextTree()
		tree.set("a.b.c", 1)
		assert tree.get("a") == {"b": {"c": 1}}
		assert isinstance(tree.root.children["a"], MapNode)

	def test_set_replaces_leaf_on_the_way(self):
		"""A leaf standing where a map is needed is replaced."""
		tree = ContextTree()
		tree.set("a", 5)
		tree.set("a.b", 1)
		assert tree.get("a") == {"b": 1}

	def test_dict_values_become_maps(self):
		"""set("a", {...}) and set("a.b", ...) produce the same structure."""
		first = ContextTree()
		first.set("a", {"b": 1})
		second = ContextTree()
		second.set("a.b", 1)
		assert first.to_dict() == second.to_dict()
		assert isinstance(first.root.children["a"].children["b"], LeafNode)

	def test_get_missing_returns_default(self):
		"""Absent paths return the default, also below a leaf."""
		tree = ContextTree.from_dict({"a": 1})
		assert tree.get("x.y") is None
		assert tree.get("a.b", "d") == "d"
		assert not tree.has("a.b")
		assert tree.has("a")

	def test_reads_are_copies(self):
		"""Mutating a returned value never touches the tree."""
		tree = ContextTree.from_dict({"items": [1, 2], "m": {"k": "v"}})
		tree.get("items").append(3)
		tree.get("m")["k"] = "changed"
		assert tree.get("items") == [1, 2]
		assert tree.get("m.k") == "v"

	def test_append(self):
		"""append creates the sequence when absent."""
		tree = ContextTree()
		assert tree.append("log", "a") == ["a"]
		assert tree.append("log", "b") == ["a", "b"]

	def test_append_to_non_sequence_raises(self):
		"""Appending to a scalar or map is rejected."""
		tree = ContextTree.from_dict({"n": 1, "m": {}})
		with pytest.raises(ValidationError):
			tree.append("n", 2)
		with pytest.raises(ValidationError):
			tree.append("m", 2)

	def test_merge(self):
		"""merge shallow-merges into a map and rejects non-maps."""
		tree = ContextTree.from_dict({"queue": {"pending": 1, "failed": 0}, "n": 1})
		tree.merge("queue", {"pending": 0, "completed": 3})
		assert tree.get("queue") == {"pending": 0, "failed": 0, "completed": 3}
		with pytest.raises(ValidationError):
			tree.merge("n", {"x": 1})

	def test_invalid_paths(self):
		"""Empty paths and empty segments are rejected."""
		tree = ContextTree()
		for path in ("", "a..b", ".a", "a."):
			with pytest.raises(ValidationError):
				tree.set(path, 1)

	def test_delete_and_paths(self):
		"""delete removes a subtree; paths lists every leaf."""
		tree = ContextTree.from_dict({"a": {"b": 1, "c": [1]}, "d": 2})
		assert sorted(tree.paths()) == ["a.b", "a.c", "d"]
		assert tree.delete("a.b") is True
		assert tree.delete("a.zz") is False
		assert sorted(tree.paths()) == ["a.c", "d"]

	def test_copy_is_deep(self):
		"""A copied tree is independent of the original."""
		tree = ContextTree.from_dict({"a": {"b": [1]}})
		clone = tree.copy()
		tree.append("a.b", 2)
		assert clone.get("a.b") == [1]
