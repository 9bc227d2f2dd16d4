"""Test the Zinc grid codec."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from haystack_client.content.zinc import (
    ZincCodec,
    decode_cell,
    encode_cell,
    parse_header,
    split_row,
)
from haystack_client.errors import GridError
from haystack_client.grid import MARKER, Grid, Number, Ref, Symbol, Uri


@pytest.fixture
def codec() -> ZincCodec:
    return ZincCodec()


class TestSplitting:
    """Literal-aware comma and space splitting."""

    def test_comma_inside_quotes(self) -> None:
        assert split_row('a,"b,c",d') == ["a", '"b,c"', "d"]

    def test_escaped_quote_does_not_toggle(self) -> None:
        assert split_row(r'"say \"hi, there\"",x') == [r'"say \"hi, there\""', "x"]

    def test_brackets_and_backticks(self) -> None:
        assert split_row("[1,2],`http://a,b`,{x y}") == ["[1,2]", "`http://a,b`", "{x y}"]

    def test_flat_toggle_is_not_nesting(self) -> None:
        """The second open bracket closes the literal."""
        assert split_row("[a,[b,c]]") == ["[a,[b", "c]]"]

    def test_empty_cells(self) -> None:
        assert split_row("a,,c") == ["a", "", "c"]
        assert split_row(",x") == ["", "x"]

    def test_header_tokens(self) -> None:
        meta = parse_header('ver:"3.0" watchId:"w 1" lease:1min refresh dis:"a b"')

        assert meta == {
            "ver": "3.0",
            "watchId": "w 1",
            "lease": Number(1, "min"),
            "refresh": MARKER,
            "dis": "a b",
        }


class TestDecodeCell:
    """Per-token decoding rules."""

    def test_scalars(self) -> None:
        assert decode_cell("") is None
        assert decode_cell("M") is MARKER
        assert decode_cell("true") is True
        assert decode_cell("false") is False

    def test_string_unescapes(self) -> None:
        assert decode_cell(r'"line\nnext \"q\""') == 'line\nnext "q"'

    def test_uri(self) -> None:
        assert decode_cell("`http://host/a`") == Uri("http://host/a")

    def test_datetime(self) -> None:
        value = decode_cell("2024-03-01T12:30:00.000Z UTC")

        assert value == datetime(2024, 3, 1, 12, 30, tzinfo=UTC)

    def test_numbers(self) -> None:
        assert decode_cell("42") == Number(42)
        assert decode_cell("-1.5") == Number(-1.5)
        assert decode_cell("72.5°F") == Number(72.5, "°F")
        assert decode_cell("1e3") == Number(1000.0)
        assert decode_cell("60000ms") == Number(60000, "ms")

    def test_ref_and_symbol(self) -> None:
        assert decode_cell("@p1") == Ref("p1")
        assert decode_cell('@p1 "Pt 1"') == Ref("p1", "Pt 1")
        assert decode_cell("^elec") == Symbol("elec")

    def test_unknown_tokens_stay_raw(self) -> None:
        assert decode_cell("N") == "N"
        assert decode_cell("C(1,2)") == "C(1,2)"


class TestEncodeCell:
    """Per-value encoding rules."""

    def test_scalars(self) -> None:
        assert encode_cell(None) == ""
        assert encode_cell(MARKER) == "M"
        assert encode_cell(True) == "true"
        assert encode_cell(Number(5, "kW")) == "5kW"
        assert encode_cell(7) == "7"

    def test_string_sniffing(self) -> None:
        assert encode_cell("10") == "10"
        assert encode_cell("-3") == "-3"
        assert encode_cell("@p1") == "@p1"
        assert encode_cell("^sym") == "^sym"
        assert encode_cell("2024-01-01T00:00:00Z") == "2024-01-01T00:00:00Z"
        assert encode_cell("http://host") == "`http://host`"
        assert encode_cell("site") == '"site"'

    def test_strings_are_not_escaped(self) -> None:
        assert encode_cell('say "hi"') == '"say "hi""'

    def test_typed_values(self) -> None:
        assert encode_cell(Ref("a", "A")) == '@a "A"'
        assert encode_cell(Uri("x")) == "`x`"
        assert encode_cell(datetime(2024, 1, 1, tzinfo=UTC)) == "2024-01-01T00:00:00.000Z"
        assert encode_cell([Number(1), "a"]) == '[1,"a"]'
        assert encode_cell({"site": MARKER, "dis": "x"}) == '{site dis:"x"}'


class TestEncode:
    """Grid to text."""

    def test_request_grid(self, codec: ZincCodec) -> None:
        grid = Grid()
        grid.set_meta("watchDis", "demo")
        grid.set_meta("lease", Number(60000, "ms"))
        grid.add("id", Ref("a"))
        grid.add("id", Ref("b"))

        assert codec.encode(grid) == (
            'ver:"3.0" watchDis:"demo" lease:60000ms\n' "id\n" "@a\n" "@b\n"
        )

    def test_empty_grid(self, codec: ZincCodec) -> None:
        assert codec.encode(Grid(), "2.0") == 'ver:"2.0"\nempty\n'

    def test_empty_meta_value_is_bare(self, codec: ZincCodec) -> None:
        grid = Grid()
        grid.set_meta("close", "")

        assert codec.encode(grid).splitlines()[0] == 'ver:"3.0" close'

    def test_jagged_rows(self, codec: ZincCodec) -> None:
        grid = Grid()
        grid.add("a", "x")
        grid.add("a", "y")
        grid.add("b", "z")

        assert codec.encode(grid).splitlines()[2:] == ['"x","z"', '"y",']


class TestDecode:
    """Text to grid."""

    def test_rows(self, codec: ZincCodec) -> None:
        grid, error = codec.decode(
            'ver:"3.0" watchId:"w1"\nid,dis,curVal\n@a "Pt A","Point A",72°F\n@b,"B",\n\n'
        )

        assert error is None
        assert grid.version == "3.0"
        assert grid.meta == {"watchId": "w1"}
        assert grid.names == ["id", "dis", "curVal"]
        assert grid.row_count() == 2
        assert grid.raw(0, 0) == Ref("a", "Pt A")
        assert grid.raw(2, 0) == Number(72, "°F")
        assert grid.raw(2, 1) is None

    def test_comma_inside_quotes(self, codec: ZincCodec) -> None:
        grid, _ = codec.decode('ver:"3.0"\na,b,c\na,"b,c",d\n')

        assert [grid.value(x, 0) for x in range(3)] == ["a", "b,c", "d"]

    def test_error_grid_short_circuits(self, codec: ZincCodec) -> None:
        grid, error = codec.decode('ver:"3.0" err dis:"bad filter"\n')

        assert error == "bad filter"
        assert grid.column_count() == 0
        assert grid.row_count() == 0

    def test_error_grid_ignores_following_lines(self, codec: ZincCodec) -> None:
        grid, error = codec.decode('ver:"3.0" err dis:"boom"\n\ngarbage,"\n')

        assert error == "boom"
        assert grid.column_count() == 0

    def test_error_without_message(self, codec: ZincCodec) -> None:
        _, error = codec.decode('ver:"3.0" err\nempty\n')

        assert error == "Unknown server error"

    def test_empty_sentinel(self, codec: ZincCodec) -> None:
        grid, error = codec.decode('ver:"3.0"\nempty\n')

        assert error is None
        assert grid.column_count() == 0
        assert grid.row_count() == 0

    def test_missing_columns_is_error(self, codec: ZincCodec) -> None:
        with pytest.raises(GridError, match="Response is not grid"):
            codec.decode('ver:"3.0"\n\n')

    def test_not_zinc_is_error(self, codec: ZincCodec) -> None:
        with pytest.raises(GridError, match="Failed to parse response"):
            codec.decode("<html>nope</html>")

    def test_crlf_lines(self, codec: ZincCodec) -> None:
        grid, _ = codec.decode('ver:"3.0"\r\ndis\r\n"x"\r\n')

        assert grid.value(0, 0) == "x"

    def test_round_trip_display_values(self, codec: ZincCodec) -> None:
        source = Grid()
        source.add("id", Ref("p1", "Pt 1"))
        source.add("dis", "Point one")
        source.add("curVal", Number(21.5, "°C"))
        source.add("point", MARKER)
        source.add("id", Ref("p2"))
        source.add("dis", "Point two")

        grid, error = codec.decode(codec.encode(source))

        assert error is None
        assert grid.names == source.names
        assert grid.row_count() == source.row_count()
        for x in range(source.column_count()):
            for y in range(source.row_count()):
                assert grid.value(x, y) == source.value(x, y)
