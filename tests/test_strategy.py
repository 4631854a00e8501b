import pytest

from db_copy.errors import StrategyParseError
from db_copy.strategy import (
    RowCountStrategy,
    TemplatedQueryStrategy,
    describe_strategy,
    effective_record_count,
    parse_directive,
    parse_strategy_overrides,
)

TEMPLATE = "SELECT * FROM custtable ORDER BY recid DESC LIMIT @recordCount"


def test_bare_table_name_uses_default_count():
    d = parse_directive("  CustTable  ")
    assert d.table_name == "CustTable"
    assert d.strategy == RowCountStrategy(None, False)
    assert effective_record_count(d.strategy, 5000) == 5000


def test_explicit_count():
    d = parse_directive("CustTable | 2500")
    assert d.strategy == RowCountStrategy(2500, False)


def test_query_without_count():
    d = parse_directive(f"CustTable|query:{TEMPLATE}")
    assert isinstance(d.strategy, TemplatedQueryStrategy)
    assert d.strategy.template == TEMPLATE
    assert d.strategy.record_count is None
    assert d.strategy.warnings == ()


def test_count_and_query_marker_is_case_insensitive():
    d = parse_directive(f"CustTable|100|QUERY:{TEMPLATE}")
    assert d.strategy.record_count == 100
    assert d.strategy.template == TEMPLATE


@pytest.mark.parametrize("line", [
    "CustTable -fullreload",
    "CustTable|10 -FullReload",
    f"CustTable|query:{TEMPLATE}   -FULLRELOAD",
])
def test_full_reload_flag_is_stripped(line):
    d = parse_directive(line)
    assert d.table_name == "CustTable"
    assert d.strategy.force_full_reload is True
    if isinstance(d.strategy, TemplatedQueryStrategy):
        assert d.strategy.template == TEMPLATE


def test_template_without_field_placeholder_is_rejected():
    with pytest.raises(StrategyParseError) as exc:
        parse_directive("CustTable|query:SELECT recid FROM custtable")
    assert "field-list placeholder" in str(exc.value)


def test_star_inside_count_is_not_a_field_placeholder():
    with pytest.raises(StrategyParseError):
        parse_directive("CustTable|query:SELECT COUNT(*) FROM custtable ORDER BY recid DESC")


def test_template_without_descending_order_only_warns():
    d = parse_directive("CustTable|query:SELECT * FROM custtable LIMIT @recordCount")
    assert len(d.strategy.warnings) == 1
    assert "ORDER BY recid DESC" in d.strategy.warnings[0]


@pytest.mark.parametrize("line,token", [
    ("|100", ""),
    ("CustTable|abc", "abc"),
    ("CustTable|0", "0"),
    ("CustTable|100|SELECT *", "SELECT *"),
])
def test_malformed_directives_name_the_token(line, token):
    with pytest.raises(StrategyParseError) as exc:
        parse_directive(line)
    assert exc.value.token == token


def test_overrides_keyed_upper_case_and_blank_lines_skipped():
    text = "custtable|10\n\n  salesline -fullreload\r\n"
    overrides = parse_strategy_overrides(text)
    assert set(overrides) == {"CUSTTABLE", "SALESLINE"}
    assert overrides["SALESLINE"].force_full_reload


def test_overrides_fail_on_first_bad_line():
    with pytest.raises(StrategyParseError):
        parse_strategy_overrides("custtable|10\nbad|x")


def test_describe_strategy():
    assert describe_strategy(RowCountStrategy(10, True), 99) == "RecId:10 (full reload)"
    assert describe_strategy(TemplatedQueryStrategy(TEMPLATE), 99) == "Query:99"
