import pytest

from initrdtools.scanmod_rules import (
    Keyword,
    RuleType,
    RulesError,
    parse_rules,
    parse_ruleset,
    parse_ruleset_text,
)

RULES = """\
# a comment
alias pci:v.*

  name   ^e1000
not-symbol ^drm_
filename /net/
symbol usb_register
"""


def test_rules_are_grouped_by_kind():
    rs = parse_ruleset_text(RULES, "rules")
    assert [r.keyword for r in rs.info] == [Keyword.ALIAS, Keyword.NAME]
    assert [r.keyword for r in rs.symbols] == [Keyword.SYMBOL, Keyword.SYMBOL]
    assert [r.type for r in rs.symbols] == [RuleType.NOT_MATCH, RuleType.MATCH]
    assert [r.keyword for r in rs.paths] == [Keyword.FILENAME]
    assert rs.has_info and rs.has_symbols and rs.has_paths


def test_match_value_keeps_rest_of_line():
    rule = parse_ruleset_text("description foo bar\n", "r").info[0]
    assert rule.type is RuleType.MATCH
    assert rule.matches("a foo bar b")
    assert not rule.matches("foo")


def test_not_rule_takes_one_token():
    rule = parse_ruleset_text("not-license GPL extra\n", "r").info[0]
    assert rule.type is RuleType.NOT_MATCH
    assert rule.keyword is Keyword.LICENSE
    assert rule.matches("GPL v2")


def test_unknown_keyword_reports_line():
    with pytest.raises(RulesError, match=r"^r:2: unknown keyword$"):
        parse_ruleset_text("# c\nversion 1\n", "r")


def test_not_without_value_is_unknown_keyword():
    with pytest.raises(RulesError, match="unknown keyword"):
        parse_ruleset_text("not-name\n", "r")


def test_missing_value_is_bad_format():
    with pytest.raises(RulesError, match="bad line format"):
        parse_ruleset_text("name\n", "r")


def test_bad_regex():
    with pytest.raises(RulesError, match="is not a regular expression"):
        parse_ruleset_text("name (\n", "r")


def test_posix_character_class():
    rule = parse_ruleset_text("name ^[[:alpha:]]+$\n", "r").info[0]
    assert rule.matches("abc")
    assert not rule.matches("ab1")


def test_empty_text_has_no_rules():
    rs = parse_ruleset_text("", "r")
    assert (rs.info, rs.symbols, rs.paths) == ([], [], [])
    assert not rs.has_info


def test_text_stops_at_nul():
    rs = parse_ruleset_text("name a\0name (\n", "r")
    assert len(rs.info) == 1


def test_keyword_lookup_round_trip():
    for keyword in Keyword:
        assert Keyword(keyword.value) is keyword
    assert Keyword.SYMBOL.is_info is False
    assert Keyword.AUTHOR.is_info is True


def test_parse_ruleset_file(tmp_path):
    path = tmp_path / "rules"
    path.write_text(RULES)
    rs = parse_ruleset(path)
    assert rs.filename == str(path)
    assert len(rs.info) == 2
    assert len(rs.paths) == 1


def test_parse_ruleset_empty_file(tmp_path):
    path = tmp_path / "empty"
    path.write_bytes(b"")
    rs = parse_ruleset(path)
    assert rs.filename == str(path)
    assert not (rs.has_info or rs.has_symbols or rs.has_paths)


def test_parse_ruleset_missing_file(tmp_path):
    with pytest.raises(RulesError, match="open:"):
        parse_ruleset(tmp_path / "missing")


def test_parse_rules_skips_duplicates(tmp_path):
    first = tmp_path / "a"
    second = tmp_path / "b"
    first.write_text("name x\n")
    second.write_text("symbol y\n")
    rulesets = parse_rules([str(first), str(second), str(first), None])
    assert [rs.filename for rs in rulesets] == [str(first), str(second)]