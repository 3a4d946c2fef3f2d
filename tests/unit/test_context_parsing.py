import pytest

from stepflow.context import (
    extract_stories_block,
    merge_context_from_output,
    parse_stories_json,
)
from stepflow.errors import RecoverableParseError


def test_merge_adds_lowercased_keys():
    output = "STATUS: done\nREPO: web\nnot a key: value\nlower: nope"
    merged = merge_context_from_output(output, {"task": "x"})
    assert merged == {"task": "x", "status": "done", "repo": "web"}


def test_merge_last_occurrence_wins_and_overwrites_existing():
    merged = merge_context_from_output("REPO: a\nREPO: b", {"repo": "old"})
    assert merged["repo"] == "b"


def test_merge_does_not_mutate_existing():
    existing = {"task": "x"}
    merge_context_from_output("REPO: web", existing)
    assert existing == {"task": "x"}


def test_merge_skips_stories_json_line():
    merged = merge_context_from_output('STORIES_JSON: [{"id": "1"}]', {})
    assert merged == {}


def test_merge_trims_values():
    assert merge_context_from_output("REPO:   web  ", {}) == {"repo": "web"}


def test_extract_block_spans_lines_until_next_key():
    output = (
        "STATUS: done\n"
        "STORIES_JSON: [\n"
        '  {"id": "S-1", "title": "One"}\n'
        "]\n"
        "REPO: web"
    )
    block = extract_stories_block(output)
    assert block == '[\n  {"id": "S-1", "title": "One"}\n]'


def test_parse_accepts_camel_and_snake_case():
    output = (
        'STORIES_JSON: [{"id": "S-1", "title": "One", "acceptanceCriteria": ["a"]},'
        ' {"story_id": "S-2", "title": "Two", "acceptance_criteria": ["b", "c"]}]'
    )
    stories = parse_stories_json(output)
    assert [s.story_id for s in stories] == ["S-1", "S-2"]
    assert stories[0].acceptance_criteria == ["a"]
    assert stories[1].acceptance_criteria == ["b", "c"]
    assert [s.story_index for s in stories] == [None, None]


def test_parse_defaults_description_and_criteria():
    (story,) = parse_stories_json('STORIES_JSON: [{"id": "S-1", "title": "Toggle"}]')
    assert story.description == ""
    assert story.acceptance_criteria == []


def test_parse_without_block_returns_empty():
    assert parse_stories_json("STATUS: done") == []


@pytest.mark.parametrize(
    "block, message",
    [
        ("[not json", "Failed to parse"),
        ('{"id": "S-1"}', "must be an array"),
        ('["S-1"]', "not an object"),
        ('[{"id": "S-1"}]', "invalid"),
        (
            '[{"id": "S-1", "title": "a"}, {"id": "S-1", "title": "b"}]',
            "duplicate",
        ),
    ],
)
def test_parse_rejects_bad_blocks(block, message):
    with pytest.raises(RecoverableParseError, match=message):
        parse_stories_json(f"STORIES_JSON: {block}")


def test_parse_enforces_story_limit():
    items = ", ".join(f'{{"id": "S-{i}", "title": "t"}}' for i in range(21))
    with pytest.raises(RecoverableParseError, match="max is 20"):
        parse_stories_json(f"STORIES_JSON: [{items}]")
    assert len(parse_stories_json(f"STORIES_JSON: [{items}]", max_stories=25)) == 21
