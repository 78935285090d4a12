"""Program-derived addresses for OpenClaw accounts."""

from solders.pubkey import Pubkey  # type: ignore[import-untyped]

from src.parsers.openclaw.constants import BONDING_CURVE_SEED, GLOBAL_CONFIG_SEED


def derive_bonding_curve_address(mint: str, program_id: str) -> str:
    """Bonding curve PDA: seeds [b"bonding_curve", mint]."""
    address, _ = Pubkey.find_program_address(
        [BONDING_CURVE_SEED, bytes(Pubkey.from_string(mint))],
        Pubkey.from_string(program_id),
    )
    return str(address)


def derive_global_config_address(program_id: str) -> str:
    address, _ = Pubkey.find_program_address(
        [GLOBAL_CONFIG_SEED], Pubkey.from_string(program_id)
    )
    return str(address)


def is_valid_pubkey(value: str) -> bool:
    try:
        Pubkey.from_string(value)
    except ValueError:
        return False
    return True
