"""Tests for flat-file CSV parsing."""
import io
from datetime import date, datetime, timezone

import pytest

from conftest import CSV_HEADER, make_day_csv
from flatfiles.pipeline.record_parser import RecordParser, RowError, parse_row, parse_window_start

NS_2024_03_11 = 1710133200000000000  # 2024-03-11T05:00:00Z


def _parse(text: str):
    return RecordParser().parse(io.BytesIO(text.encode('utf-8')), label='test')


class TestParseWindowStart:
    """Epoch unit detection and ISO fallback."""

    expected = datetime(2024, 3, 11, 5, 0, tzinfo=timezone.utc)

    def test_nanoseconds(self):
        assert parse_window_start(str(NS_2024_03_11)) == self.expected

    def test_milliseconds(self):
        assert parse_window_start(str(NS_2024_03_11 // 1_000_000)) == self.expected

    def test_seconds(self):
        assert parse_window_start(str(NS_2024_03_11 // 1_000_000_000)) == self.expected

    def test_iso_text(self):
        assert parse_window_start('2024-03-11T05:00:00Z') == self.expected

    def test_naive_iso_is_utc(self):
        assert parse_window_start('2024-03-11T05:00:00') == self.expected

    def test_sub_second_precision_kept(self):
        parsed = parse_window_start(str(NS_2024_03_11 + 123_456_789))
        assert parsed.microsecond == 123456

    def test_garbage(self):
        with pytest.raises(RowError):
            parse_window_start('yesterday')


class TestParseRow:
    """Single-row conversion."""

    def _row(self, **overrides):
        row = {
            'ticker': 'AAPL', 'volume': '1000', 'open': '170.5', 'close': '171.25',
            'high': '172', 'low': '169.75', 'window_start': str(NS_2024_03_11),
            'transactions': '42', 'vwap': '171.1',
        }
        row.update(overrides)
        return row

    def test_valid_row(self):
        bar = parse_row(self._row())
        assert bar.ticker == 'AAPL'
        assert (bar.open, bar.high, bar.low, bar.close) == (170.5, 172.0, 169.75, 171.25)
        assert bar.volume == 1000
        assert bar.transactions == 42
        assert bar.vwap == 171.1

    def test_optional_fields_empty(self):
        bar = parse_row(self._row(vwap='', transactions=None))
        assert bar.vwap is None
        assert bar.transactions is None

    def test_float_volume_accepted(self):
        assert parse_row(self._row(volume='1234.0')).volume == 1234

    @pytest.mark.parametrize('column,value', [
        ('open', 'abc'),
        ('close', ''),
        ('high', 'nan'),
        ('low', 'inf'),
        ('volume', '12.5'),
        ('ticker', '  '),
    ])
    def test_invalid_values_rejected(self, column, value):
        with pytest.raises(RowError):
            parse_row(self._row(**{column: value}))


class TestRecordParser:
    """Whole-file parsing behaviour."""

    def test_generated_file(self):
        result = RecordParser().parse(io.BytesIO(make_day_csv(date(2024, 3, 11), 100)))
        assert len(result.records) == 100
        assert result.skipped == 0
        assert result.total_rows == 100

    def test_malformed_rows_are_skipped_and_counted(self):
        text = "\n".join([
            CSV_HEADER,
            f"AAPL,1000,1,2,3,0.5,{NS_2024_03_11},10,1.5",
            f"BAD1,notanumber,1,2,3,0.5,{NS_2024_03_11},10,1.5",
            f"BAD2,1000,1,2,3,0.5,not-a-time,10,1.5",
            "BAD3,1000",
            f"MSFT,2000,1,2,3,0.5,{NS_2024_03_11},,",
        ])
        result = _parse(text)
        assert [r.ticker for r in result.records] == ['AAPL', 'MSFT']
        assert result.skipped == 3
        assert result.skip_reasons['invalid_volume'] == 1
        assert result.skip_reasons['invalid_window_start'] == 1

    def test_blank_lines_ignored(self):
        text = f"{CSV_HEADER}\n\nAAPL,1000,1,2,3,0.5,{NS_2024_03_11},10,1.5\n\n   \n"
        result = _parse(text)
        assert len(result.records) == 1
        assert result.skipped == 0

    def test_whitespace_trimmed(self):
        text = (" ticker , volume , open , close , high , low , window_start \n"
                f" AAPL , 1000 , 1 , 2 , 3 , 0.5 , {NS_2024_03_11} \n")
        result = _parse(text)
        assert result.records[0].ticker == 'AAPL'
        assert result.records[0].volume == 1000

    def test_column_order_follows_header(self):
        text = f"window_start,ticker,low,high,close,open,volume\n{NS_2024_03_11},SPY,1,4,3,2,500\n"
        bar = _parse(text).records[0]
        assert (bar.ticker, bar.open, bar.high, bar.low, bar.close, bar.volume) == ('SPY', 2.0, 4.0, 1.0, 3.0, 500)

    def test_missing_required_column_skips_everything(self):
        text = f"ticker,volume,open,close,high,low\nAAPL,1000,1,2,3,0.5\n"
        result = _parse(text)
        assert result.records == []
        assert result.skipped == 1

    def test_header_only_file(self):
        result = _parse(CSV_HEADER + "\n")
        assert result.records == []
        assert result.skipped == 0

    def test_stream_left_open(self):
        stream = io.BytesIO(make_day_csv(date(2024, 3, 11), 1))
        RecordParser().parse(stream)
        assert not stream.closed

    def test_undecodable_line_is_skipped(self):
        payload = b"\n".join([
            CSV_HEADER.encode(),
            f"AAPL,1000,1,2,3,0.5,{NS_2024_03_11},10,1.5".encode(),
            f"B\xffD,1000,1,2,3,0.5,{NS_2024_03_11},10,1.5".encode('latin-1'),
            f"MSFT,2000,1,2,3,0.5,{NS_2024_03_11},10,1.5".encode(),
        ])
        result = RecordParser().parse(io.BytesIO(payload), label='test')
        assert [r.ticker for r in result.records] == ['AAPL', 'MSFT']
        assert result.skip_reasons == {'invalid_encoding': 1}

    def test_oversized_field_is_skipped(self):
        text = "\n".join([
            CSV_HEADER,
            f"AAPL,1000,1,2,3,0.5,{NS_2024_03_11},10,1.5",
            "X" * 200000 + f",1000,1,2,3,0.5,{NS_2024_03_11},10,1.5",
            f"MSFT,2000,1,2,3,0.5,{NS_2024_03_11},10,1.5",
        ])
        result = _parse(text)
        assert [r.ticker for r in result.records] == ['AAPL', 'MSFT']
        assert result.skip_reasons == {'invalid_csv': 1}
