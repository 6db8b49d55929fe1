"""Tests for todo normalization, merging and seeding."""

import os
import sys

# Ensure src is on path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from codeagent.todo import (
    TodoItem,
    TodoList,
    TodoStatus,
    build_planner_instruction,
    merge_todo_lists,
    normalize_todo_list,
    seed_todos_from_prompt,
    todo_signature,
)


def item(id, text, done=False):
    return TodoItem(id=id, text=text, status=TodoStatus.DONE if done else TodoStatus.PENDING)


class TestNormalize:
    def test_fills_missing_ids_and_drops_empty(self):
        items = normalize_todo_list([{"text": "a"}, {"text": "  "}, "plain", {"title": "t", "status": "complete"}])
        assert [(i.id, i.text, i.status) for i in items] == [
            ("todo_1", "a", TodoStatus.PENDING),
            ("todo_3", "plain", TodoStatus.PENDING),
            ("todo_4", "t", TodoStatus.DONE),
        ]

    def test_non_list(self):
        assert normalize_todo_list({"text": "a"}) == []
        assert normalize_todo_list(None) == []


class TestMerge:
    def test_done_is_sticky(self):
        current = [item("1", "a", done=True), item("2", "b")]
        incoming = [item("1", "a"), item("2", "b", done=True)]
        merged = merge_todo_lists(current, incoming)
        assert all(i.done for i in merged)

    def test_match_by_text_case_insensitive(self):
        current = [item("x", "Write Tests", done=True)]
        merged = merge_todo_lists(current, [item("y", "write tests")])
        assert len(merged) == 1
        assert merged[0].id == "y"
        assert merged[0].done

    def test_missing_done_items_are_appended(self):
        current = [item("1", "a", done=True), item("2", "b")]
        merged = merge_todo_lists(current, [item("3", "c")])
        assert [i.id for i in merged] == ["3", "1"]
        assert merged[1].done

    def test_missing_pending_items_are_dropped(self):
        merged = merge_todo_lists([item("1", "a")], [item("2", "b")])
        assert [i.id for i in merged] == ["2"]

    def test_empty_incoming_keeps_current(self):
        current = [item("1", "a")]
        assert merge_todo_lists(current, []) == current

    def test_no_duplicate_when_done_item_resent(self):
        current = [item("1", "a", done=True)]
        merged = merge_todo_lists(current, [item("1", "a", done=True)])
        assert len(merged) == 1


class TestSeeding:
    def test_numbered_plan(self):
        prompt = "Please follow this plan:\n1. Add parser\n2) Write tests\n3. Update docs"
        seeded = seed_todos_from_prompt(prompt)
        assert [i.text for i in seeded] == ["Add parser", "Write tests", "Update docs"]
        assert [i.id for i in seeded] == ["todo_1", "todo_2", "todo_3"]

    def test_no_cue_word(self):
        assert seed_todos_from_prompt("1. Add parser\n2. Write tests") is None

    def test_cue_without_numbered_lines(self):
        assert seed_todos_from_prompt("Make a todo list for me") is None


class TestTodoList:
    def test_planner_instruction_names_first_pending(self):
        todos = TodoList([item("1", "a", done=True), item("2", "b"), item("3", "c")])
        text = todos.planner_instruction()
        assert "Next item to execute: b" in text
        assert "1. [done] a" in text
        assert "2. [pending] b" in text

    def test_planner_instruction_empty_when_all_done(self):
        assert build_planner_instruction([item("1", "a", done=True)]) == ""
        assert build_planner_instruction([]) == ""

    def test_apply_update_and_pending(self):
        todos = TodoList()
        todos.apply_update([item("1", "a"), item("2", "b")])
        assert todos.has_pending()
        todos.apply_update([item("1", "a", done=True), item("2", "b", done=True)])
        assert not todos.has_pending()
        assert len(todos) == 2

    def test_format_list(self):
        assert TodoList().format_list() == "No todos."
        todos = TodoList([item("1", "a", done=True)])
        assert todos.format_list() == "[1] ● a (done)"

    def test_dict_round_trip(self):
        todos = TodoList([item("1", "a"), item("2", "b", done=True)])
        restored = TodoList.from_dict(todos.to_dict())
        assert restored.to_dict() == todos.to_dict()

    def test_signature_is_order_sensitive(self):
        a = [item("1", "a"), item("2", "b")]
        b = [item("2", "b"), item("1", "a")]
        assert todo_signature(a) == todo_signature(list(a))
        assert todo_signature(a) != todo_signature(b)
