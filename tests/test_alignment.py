"""Tests for the alignment engine."""

from targum.alignment.engine import (
    align,
    char_diff,
    edit_distance,
    match_score,
    score_from_distance,
    token_diff,
)


class TestEditDistance:
    def test_classic_cases(self):
        assert edit_distance("kitten", "sitting") == 3
        assert edit_distance("", "abc") == 3
        assert edit_distance("abc", "") == 3
        assert edit_distance("same", "same") == 0

    def test_symmetric(self):
        assert edit_distance("בראשית", "ברשית") == edit_distance("ברשית", "בראשית")

    def test_score_bounds(self):
        assert score_from_distance(0, 0, 0) == 1.0
        assert score_from_distance(10, 2, 3) == 0.0

    def test_score_non_increasing_in_distance(self):
        scores = [score_from_distance(d, 6, 8) for d in range(12)]
        assert scores == sorted(scores, reverse=True)
        assert all(0.0 <= s <= 1.0 for s in scores)


class TestMatchScore:
    def test_equal_after_normalization_scores_one(self):
        assert match_score("ברא  אלהים ", "ברא אלהים") == 1.0

    def test_partial_match(self):
        score = match_score("abcd", "abcf")
        assert score == 0.75


class TestCharDiff:
    def test_ops_reproduce_distance(self):
        diff = char_diff("abc", "axcd")
        stats = diff.stats()
        assert diff.edit_distance == 2
        assert stats["substitute"] + stats["insert"] + stats["delete"] == 2
        assert [op.op for op in diff.ops if op.op != "equal"] == ["substitute", "insert"]


class TestTokenDiff:
    def test_positional_ops(self):
        ops, details = token_diff("a b c", "a x")
        assert [(op.op, op.index) for op in ops] == [
            ("equal", 0),
            ("replace", 1),
            ("delete", 2),
        ]
        assert 1 in details
        assert details[1].edit_distance == 1

    def test_insert_when_candidate_shorter(self):
        ops, _ = token_diff("", "a")
        assert ops[0].op == "insert"
        assert ops[0].b == "a"


class TestAlign:
    def test_identical(self):
        result = align("בראשית ברא", "בראשית  ברא")
        assert result.edit_distance == 0
        assert result.match_score == 1.0
        assert result.replace_details == {}
        assert result.char_stats["equal"] == result.char_stats["baseline_chars"]

    def test_to_dict_keys_replace_details_by_string(self):
        data = align("a bc", "a bd").to_dict()
        assert set(data["replace_details"]) == {"1"}
        assert data["char_stats"]["substitutions"] == 1
        assert data["token_diff_ops"][1]["op"] == "replace"
