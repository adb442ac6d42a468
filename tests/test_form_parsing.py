"""
Tests for linebridge/utils/form_parsing.py - bracket-nested form decoding.
"""
from urllib.parse import urlencode

from linebridge.utils.form_parsing import parse_bracket_form


class TestParseBracketForm:
    def test_flat_keys(self):
        assert parse_bracket_form("event=ONAPPTEST&ts=1700000000") == {
            "event": "ONAPPTEST",
            "ts": "1700000000",
        }

    def test_nested_map(self):
        result = parse_bracket_form("auth[domain]=acme.bitrix24.com&auth[member_id]=m1")
        assert result == {"auth": {"domain": "acme.bitrix24.com", "member_id": "m1"}}

    def test_numeric_segment_creates_list(self):
        result = parse_bracket_form("data[MESSAGES][0][text]=hi")
        assert result == {"data": {"MESSAGES": [{"text": "hi"}]}}

    def test_multiple_list_entries_keep_order(self):
        body = "data[MESSAGES][0][text]=first&data[MESSAGES][1][text]=second"
        result = parse_bracket_form(body)
        assert [m["text"] for m in result["data"]["MESSAGES"]] == ["first", "second"]

    def test_deep_nesting(self):
        body = urlencode({
            "data[MESSAGES][0][message][text]": "Olá, tudo bem?",
            "data[MESSAGES][0][im][chat_id]": "1042",
            "data[MESSAGES][0][user][id]": "77",
        })
        message = parse_bracket_form(body)["data"]["MESSAGES"][0]
        assert message["message"]["text"] == "Olá, tudo bem?"
        assert message["im"]["chat_id"] == "1042"
        assert message["user"]["id"] == "77"

    def test_url_decoding(self):
        result = parse_bracket_form("data%5BLINE%5D=3&text=hello%20world")
        assert result == {"data": {"LINE": "3"}, "text": "hello world"}

    def test_blank_values_kept(self):
        assert parse_bracket_form("event=&auth[domain]=") == {"event": "", "auth": {"domain": ""}}

    def test_later_value_wins(self):
        assert parse_bracket_form("event=A&event=B") == {"event": "B"}

    def test_sparse_list_indexes_collapse(self):
        result = parse_bracket_form("items[2]=c&items[0]=a")
        assert result == {"items": ["a", "c"]}

    def test_non_numeric_key_under_list_is_dropped(self):
        result = parse_bracket_form("items[0]=a&items[name]=x")
        assert result == {"items": ["a"]}

    def test_empty_body(self):
        assert parse_bracket_form("") == {}

    def test_garbage_does_not_raise(self):
        assert isinstance(parse_bracket_form("%%%&&&[[[]]]==="), dict)

    def test_huge_index_stays_sparse(self):
        result = parse_bracket_form("data[MESSAGES][20000000][text]=x")
        assert result == {"data": {"MESSAGES": [{"text": "x"}]}}

    def test_many_huge_indexes_ordered_by_index(self):
        body = "items[900000000]=z&items[5]=b&items[40000000]=m&items[0]=a"
        assert parse_bracket_form(body) == {"items": ["a", "b", "m", "z"]}

    def test_repeated_index_later_value_wins(self):
        assert parse_bracket_form("items[3]=old&items[3]=new") == {"items": ["new"]}
