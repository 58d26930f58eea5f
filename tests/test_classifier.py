"""Tests for the read-only statement classifier."""

from unittest.mock import MagicMock

import pytest

from sqlgate.core.classifier import (
    FORBIDDEN_KEYWORDS,
    REASON_EMPTY,
    REASON_MULTIPLE,
    REASON_PROCEDURE,
    REASON_SHAPE,
    StatementClassifier,
    TokenKind,
    check_procedure_call,
    classify,
    scratch,
    tokenize,
)

SINGLE_WORD_KEYWORDS = [kw for kw in FORBIDDEN_KEYWORDS if " " not in kw]


@pytest.fixture
def classifier():
    return StatementClassifier(logger=MagicMock())


@pytest.mark.unit
class TestScenarios:
    def test_plain_select_admitted(self, classifier):
        verdict = classifier.classify("SELECT * FROM customers")
        assert verdict.admitted
        assert verdict.reason is None

    def test_stacked_drop_denied(self, classifier):
        verdict = classifier.classify("SELECT * FROM customers; DROP TABLE customers")
        assert not verdict.admitted
        assert verdict.reason == REASON_MULTIPLE

    def test_update_denied_citing_keyword(self, classifier):
        verdict = classifier.classify("UPDATE customers SET name='x' WHERE id=1")
        assert not verdict.admitted
        assert verdict.reason.startswith(REASON_SHAPE)
        assert "UPDATE" in verdict.reason
        assert verdict.keyword == "UPDATE"

    def test_keyword_substrings_admitted(self, classifier):
        verdict = classifier.classify("SELECT id, update_date, create_date FROM products")
        assert verdict.admitted


@pytest.mark.unit
class TestEmpty:
    @pytest.mark.parametrize("text", [None, "", "   ", "\n\t "])
    def test_empty_denied(self, classifier, text):
        verdict = classifier.classify(text)
        assert not verdict.admitted
        assert verdict.reason == REASON_EMPTY


@pytest.mark.unit
class TestMultipleStatements:
    @pytest.mark.parametrize(
        "text",
        [
            "SELECT 1; SELECT 2",
            "SELECT 1 ;DELETE FROM t",
            "SELECT 1;\n\nSELECT 2;",
            "SELECT 1; -- trailing comment",
        ],
    )
    def test_semicolon_followed_by_content_denied(self, classifier, text):
        assert classifier.classify(text).reason == REASON_MULTIPLE

    @pytest.mark.parametrize("text", ["SELECT 1;", "SELECT 1;   ", "SELECT 1;\n"])
    def test_single_trailing_semicolon_admitted(self, classifier, text):
        assert classifier.classify(text).admitted

    def test_semicolon_inside_string_literal_admitted(self, classifier):
        assert classifier.classify("SELECT ';' AS sep, 'a;b' FROM t").admitted

    def test_semicolon_inside_dollar_quote_admitted(self, classifier):
        assert classifier.classify("SELECT $tag$ ; DROP TABLE t $tag$ AS body").admitted

    def test_semicolon_inside_comment_still_counts(self, classifier):
        verdict = classifier.classify("SELECT 1 -- ; DROP TABLE t\nFROM t")
        assert verdict.reason == REASON_MULTIPLE


@pytest.mark.unit
class TestStatementShape:
    @pytest.mark.parametrize(
        "text",
        [
            "select * from users",
            "  SELECT 1",
            "/* leading */ SELECT 1",
            "-- leading\nSELECT 1",
            "SELECT\n1",
            "SELECT/*c*/1",
        ],
    )
    def test_select_shapes_admitted(self, classifier, text):
        assert classifier.classify(text).admitted

    @pytest.mark.parametrize(
        "text",
        [
            "EXPLAIN SELECT 1",
            "VALUES (1)",
            "users",
            "SELECT",
            "SELECT;",
            "SELECT ;",
            "SELECT*FROM t",
            "SELECT(1)",
            "SHOW search_path",
            "(SELECT 1)",
        ],
    )
    def test_non_select_denied(self, classifier, text):
        verdict = classifier.classify(text)
        assert not verdict.admitted
        assert verdict.reason == REASON_SHAPE
        assert verdict.keyword is None

    def test_simple_cte_admitted(self, classifier):
        assert classifier.classify("WITH t AS (SELECT 1 AS n) SELECT n FROM t").admitted

    def test_multiple_ctes_admitted(self, classifier):
        text = "WITH a AS (SELECT 1), b AS (SELECT 2) SELECT * FROM a, b"
        assert classifier.classify(text).admitted

    def test_recursive_cte_with_columns_admitted(self, classifier):
        text = (
            "WITH RECURSIVE r(n) AS (SELECT 1 UNION ALL SELECT n + 1 FROM r WHERE n < 5) "
            "SELECT n FROM r"
        )
        assert classifier.classify(text).admitted

    def test_materialized_cte_admitted(self, classifier):
        text = "WITH t AS NOT MATERIALIZED (SELECT 1) SELECT * FROM t"
        assert classifier.classify(text).admitted

    @pytest.mark.parametrize(
        "text",
        [
            "WITH t AS () SELECT 1",
            "WITH t AS (SELECT 1)",
            "WITH SELECT 1",
            "WITH t AS (SELECT 1) VALUES (1)",
            "WITH t (SELECT 1) SELECT 1",
        ],
    )
    def test_malformed_cte_denied(self, classifier, text):
        assert classifier.classify(text).reason == REASON_SHAPE

    def test_data_modifying_cte_denied_by_keyword(self, classifier):
        text = "WITH x AS (DELETE FROM t RETURNING *) SELECT * FROM x"
        verdict = classifier.classify(text)
        assert verdict.reason == "forbidden keyword: DELETE"
        assert verdict.keyword == "DELETE"


@pytest.mark.unit
class TestForbiddenKeywords:
    @pytest.mark.parametrize("keyword", FORBIDDEN_KEYWORDS)
    def test_standalone_keyword_denied(self, classifier, keyword):
        verdict = classifier.classify(f"SELECT * FROM t WHERE x = 1 {keyword.lower()} y")
        assert not verdict.admitted
        assert verdict.keyword == keyword
        assert verdict.reason == f"forbidden keyword: {keyword}"

    @pytest.mark.parametrize("keyword", FORBIDDEN_KEYWORDS)
    def test_keyword_between_comments_denied(self, classifier, keyword):
        text = f"SELECT 1 FROM t/*a*/{keyword.replace(' ', chr(10))}/*b*/"
        assert classifier.classify(text).keyword == keyword

    @pytest.mark.parametrize("keyword", SINGLE_WORD_KEYWORDS)
    def test_keyword_as_identifier_substring_admitted(self, classifier, keyword):
        kw = keyword.lower()
        text = f"SELECT {kw}_col, x_{kw}, {kw}2 FROM t"
        assert classifier.classify(text).admitted

    def test_first_match_in_list_order(self, classifier):
        verdict = classifier.classify("SELECT 1 FROM t WHERE lock OR drop")
        assert verdict.keyword == "DROP"

    def test_select_for_update_denied(self, classifier):
        assert classifier.classify("SELECT * FROM t FOR UPDATE").keyword == "UPDATE"

    def test_keyword_in_string_literal_admitted(self, classifier):
        assert classifier.classify("SELECT 'DROP TABLE users' AS msg").admitted

    def test_keyword_in_escape_string_admitted(self, classifier):
        assert classifier.classify("SELECT E'it\\'s DELETE' AS msg").admitted

    def test_keyword_in_quoted_identifier_admitted(self, classifier):
        assert classifier.classify('SELECT "delete", "Update" FROM t').admitted

    def test_keyword_in_line_comment_admitted(self, classifier):
        verdict = classifier.classify("SELECT 1 -- DROP TABLE users")
        assert verdict.admitted
        assert verdict.had_comments

    def test_keyword_after_hash_denied(self, classifier):
        verdict = classifier.classify("SELECT 1 # TRUNCATE users")
        assert verdict.keyword == "TRUNCATE"
        assert verdict.had_comments

    def test_write_hidden_behind_hash_in_cte_denied(self, classifier):
        text = (
            "WITH d AS (SELECT 1 # 1), e AS (DELETE FROM customers RETURNING 1), "
            "f AS (SELECT 1\n) SELECT 1"
        )
        verdict = classifier.classify(text)
        assert not verdict.admitted
        assert verdict.keyword == "DELETE"

    def test_plain_hash_note_admitted(self, classifier):
        assert classifier.classify("SELECT 1 # just a note").admitted

    def test_keyword_after_inner_block_comment_close_denied(self, classifier):
        verdict = classifier.classify("SELECT 1 /* outer /* inner */ DROP */ FROM t")
        assert verdict.keyword == "DROP"

    def test_backslash_does_not_escape_plain_string(self, classifier):
        verdict = classifier.classify("SELECT 'a\\' ; DELETE FROM t; --'")
        assert verdict.reason == REASON_MULTIPLE

    def test_unterminated_literal_is_not_opaque(self, classifier):
        verdict = classifier.classify("SELECT 'open ; DROP TABLE t")
        assert verdict.reason == REASON_MULTIPLE


@pytest.mark.unit
class TestProcedureCall:
    def test_execute_procedure_denied_by_keyword_rule(self, classifier):
        verdict = classifier.classify("SELECT 1 FROM t EXECUTE PROCEDURE audit()")
        assert verdict.keyword == "EXECUTE"

    @pytest.mark.parametrize("target", ["PROCEDURE", "function"])
    def test_procedure_check_directly(self, target):
        verdict = check_procedure_call(scratch(f"SELECT 1 EXECUTE {target} f()"))
        assert verdict is not None
        assert verdict.reason == REASON_PROCEDURE
        assert verdict.keyword == f"EXECUTE {target.upper()}"

    def test_procedure_check_passes_plain_select(self):
        assert check_procedure_call(scratch("SELECT execute_at FROM jobs")) is None


@pytest.mark.unit
class TestTokenizer:
    @pytest.mark.parametrize(
        "text",
        [
            "SELECT 'a''b', \"x\"\"y\", $$z$$ -- c\n/* d /* e */ */ #f",
            "SELECT E'\\n' FROM t",
            "SELECT 'unterminated",
            "SELECT $$open",
        ],
    )
    def test_tokens_cover_text(self, text):
        assert "".join(t.text for t in tokenize(text)) == text

    def test_doubled_quote_stays_one_literal(self):
        tokens = [t for t in tokenize("SELECT 'it''s'") if t.significant]
        assert tokens[-1].kind is TokenKind.STRING
        assert tokens[-1].text == "'it''s'"

    def test_word_with_dollar(self):
        tokens = [t for t in tokenize("SELECT a$1") if t.significant]
        assert tokens[-1].kind is TokenKind.WORD
        assert tokens[-1].text == "a$1"

    def test_scratch_copies(self):
        sc = scratch("SELECT 'x;y' /* DROP */ FROM \"t\"")
        assert sc.masked == "SELECT '' /* DROP */ FROM \"\""
        assert sc.analysis == "SELECT ''   FROM \"\""
        assert sc.had_comments

    def test_hash_span_kept_in_scan_copy(self):
        sc = scratch("SELECT 1 # DROP x")
        assert sc.analysis == "SELECT 1"
        assert sc.scan == "SELECT 1 # DROP x"
        assert [t.kind for t in tokenize("SELECT 1 # DROP x")][-1] is TokenKind.COMMENT


@pytest.mark.unit
class TestClassifierBehaviour:
    def test_deterministic(self, classifier):
        text = "SELECT * FROM t WHERE name = 'x'"
        assert classifier.classify(text) == classifier.classify(text)

    def test_text_never_modified(self, classifier):
        text = "SELECT 1 -- keep me"
        classifier.classify(text)
        assert text == "SELECT 1 -- keep me"

    def test_is_admitted(self, classifier):
        assert classifier.is_admitted("SELECT 1")
        assert not classifier.is_admitted("DROP TABLE t")

    def test_had_comments_false_without_comments(self, classifier):
        assert not classifier.classify("SELECT 1").had_comments

    def test_denial_logged_as_warning(self):
        log = MagicMock()
        StatementClassifier(logger=log).classify("DELETE FROM t")
        log.warning.assert_called_once()
        assert log.warning.call_args.kwargs["query"] == "DELETE FROM t"

    def test_comments_logged_as_info(self):
        log = MagicMock()
        StatementClassifier(logger=log).classify("SELECT 1 -- hi")
        log.info.assert_called_once()

    def test_module_level_classify(self):
        assert classify("SELECT 1").admitted
