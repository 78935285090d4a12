"""OpenClaw program constants: PDA seeds and log-line markers."""

import re

# PDA seeds (state.rs)
GLOBAL_CONFIG_SEED = b"global_config"
BONDING_CURVE_SEED = b"bonding_curve"

# Markers as they appear in "Program log: ..." lines
MARKER_TOKEN_CREATED = "Token created:"
MARKER_BUY = "Buy:"
MARKER_SELL = "Sell:"
MARKER_MIGRATED = "migrated"
MARKER_FEE_UPDATED = "Updated fee to"
MARKER_THRESHOLD_UPDATED = "Updated migration threshold to"

# msg!("Token created: {} ({}) at {}", name, symbol, mint)
TOKEN_CREATED_RE = re.compile(r"Token created: (.+) \((.+)\) at (\S+)")
# msg!("Buy: {} lamports -> {} tokens (fee: {} lamports)", sol_amount, tokens_out, fee)
BUY_RE = re.compile(r"Buy: (\d+) lamports -> (\d+) tokens \(fee: (\d+) lamports\)")
# msg!("Sell: {} tokens -> {} lamports (fee: {} lamports)", token_amount, sol_out, fee)
SELL_RE = re.compile(r"Sell: (\d+) tokens -> (\d+) lamports \(fee: (\d+) lamports\)")
# msg!("Token {} migrated to DEX with {} lamports and {} tokens", ...)
MIGRATED_RE = re.compile(r"Token (\w+) migrated")
FEE_UPDATED_RE = re.compile(r"Updated fee to (\d+) bps")
THRESHOLD_UPDATED_RE = re.compile(r"Updated migration threshold to (\d+) lamports")

# SPL token account layout: mint (32) | owner (32) | amount (u64) | ...
SPL_TOKEN_ACCOUNT_SIZE = 165
