"""Tests for OpenClaw log-line parsing and PDA derivation."""

import pytest
from solders.pubkey import Pubkey  # type: ignore[import-untyped]

from src.indexer.errors import ParseMismatch
from src.parsers.openclaw.event_parser import parse_log_line, parse_transaction
from src.parsers.openclaw.models import (
    ConfigUpdated,
    LogBatch,
    Migrated,
    TokenCreated,
    TradeExecuted,
)
from src.parsers.openclaw.pda import (
    derive_bonding_curve_address,
    derive_global_config_address,
    is_valid_pubkey,
)
from src.pricing.engine import TradeDirection

SIG = "5" * 88
MINT = str(Pubkey.new_unique())
PROGRAM_ID = str(Pubkey.new_unique())


class TestParseLogLine:
    def test_token_created(self) -> None:
        event = parse_log_line(f"Program log: Token created: Claw Coin (CLAW) at {MINT}", SIG)
        assert isinstance(event, TokenCreated)
        assert event.name == "Claw Coin"
        assert event.symbol == "CLAW"
        assert event.mint == MINT
        assert event.signature == SIG

    def test_buy(self) -> None:
        line = "Program log: Buy: 1000000000 lamports -> 31928046 tokens (fee: 10000000 lamports)"
        event = parse_log_line(line, SIG)
        assert isinstance(event, TradeExecuted)
        assert event.direction is TradeDirection.BUY
        assert event.sol_amount == 1_000_000_000
        assert event.token_amount == 31_928_046
        assert event.fee_amount == 10_000_000

    def test_sell_field_order(self) -> None:
        line = "Program log: Sell: 31928046 tokens -> 980000000 lamports (fee: 9900000 lamports)"
        event = parse_log_line(line, SIG)
        assert isinstance(event, TradeExecuted)
        assert event.direction is TradeDirection.SELL
        assert event.token_amount == 31_928_046
        assert event.sol_amount == 980_000_000
        assert event.fee_amount == 9_900_000

    def test_migrated(self) -> None:
        line = f"Program log: Token {MINT} migrated to DEX with 85000000000 lamports and 1 tokens"
        event = parse_log_line(line, SIG)
        assert isinstance(event, Migrated)
        assert event.mint == MINT

    def test_config_updates(self) -> None:
        fee = parse_log_line("Program log: Updated fee to 150 bps", SIG)
        assert isinstance(fee, ConfigUpdated)
        assert fee.fee_bps == 150
        assert fee.migration_threshold_lamports is None

        threshold = parse_log_line(
            "Program log: Updated migration threshold to 90000000000 lamports", SIG
        )
        assert isinstance(threshold, ConfigUpdated)
        assert threshold.migration_threshold_lamports == 90_000_000_000

    @pytest.mark.parametrize(
        "line",
        [
            "Program log: Instruction: Buy",
            "Program 11111111111111111111111111111111 invoke [2]",
            "Program ComputeBudget111111111111111111111111111111 success",
            "Program consumed 43210 of 200000 compute units",
            "",
        ],
    )
    def test_irrelevant_lines_yield_nothing(self, line) -> None:
        assert parse_log_line(line, SIG) is None

    @pytest.mark.parametrize(
        "line",
        [
            "Program log: Buy: lots lamports -> 5 tokens (fee: 1 lamports)",
            "Program log: Sell: 5 tokens -> 10 lamports",
            "Program log: Token created: NoMint (X) at not-a-pubkey",
            "Program log: Buy: 0 lamports -> 5 tokens (fee: 0 lamports)",
            "Program log: Buy: 99999999999999999999999 lamports -> 5 tokens (fee: 0 lamports)",
            "Program log: Buy: 9223372036854775808 lamports -> 5 tokens (fee: 0 lamports)",
            "Program log: Sell: 9223372036854775808 tokens -> 10 lamports (fee: 1 lamports)",
            "Program log: Token abc migrated to DEX",
        ],
    )
    def test_malformed_marker_lines_raise(self, line) -> None:
        with pytest.raises(ParseMismatch):
            parse_log_line(line, SIG)


class TestParseTransaction:
    def test_failed_transaction_yields_nothing(self) -> None:
        batch = LogBatch(
            signature=SIG,
            success=False,
            logs=["Program log: Buy: 1000 lamports -> 10 tokens (fee: 10 lamports)"],
        )
        parsed = parse_transaction(batch)
        assert parsed.events == []
        assert parsed.mismatches == []

    def test_bad_line_does_not_stop_later_lines(self) -> None:
        batch = LogBatch(
            signature=SIG,
            success=True,
            logs=[
                "Program log: Instruction: CreateToken",
                "Program log: Buy: garbage",
                f"Program log: Token created: A (B) at {MINT}",
                "Program log: Buy: 1000 lamports -> 10 tokens (fee: 10 lamports)",
            ],
        )
        parsed = parse_transaction(batch)
        assert len(parsed.mismatches) == 1
        assert [e.kind for e in parsed.events] == ["token_created", "trade"]
        assert all(e.signature == SIG for e in parsed.events)


class TestPda:
    def test_bonding_curve_is_deterministic(self) -> None:
        a = derive_bonding_curve_address(MINT, PROGRAM_ID)
        b = derive_bonding_curve_address(MINT, PROGRAM_ID)
        assert a == b
        assert is_valid_pubkey(a)

    def test_bonding_curve_matches_find_program_address(self) -> None:
        expected, _ = Pubkey.find_program_address(
            [b"bonding_curve", bytes(Pubkey.from_string(MINT))],
            Pubkey.from_string(PROGRAM_ID),
        )
        assert derive_bonding_curve_address(MINT, PROGRAM_ID) == str(expected)

    def test_distinct_mints_distinct_curves(self) -> None:
        other = str(Pubkey.new_unique())
        assert derive_bonding_curve_address(MINT, PROGRAM_ID) != derive_bonding_curve_address(
            other, PROGRAM_ID
        )

    def test_global_config(self) -> None:
        assert is_valid_pubkey(derive_global_config_address(PROGRAM_ID))

    def test_is_valid_pubkey(self) -> None:
        assert is_valid_pubkey(MINT)
        assert not is_valid_pubkey("not-a-pubkey")


def test_largest_storable_amount_is_accepted():
    line = f"Program log: Buy: {2**63 - 1} lamports -> 5 tokens (fee: 0 lamports)"
    event = parse_log_line(line, SIG)
    assert isinstance(event, TradeExecuted)
    assert event.sol_amount == 2**63 - 1
