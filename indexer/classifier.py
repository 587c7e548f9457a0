"""
Jig Ledger - State Output Classifier

Decides which output of a transaction carries a tracked asset's state, and
whether that state sits at a holder address or inside a marketplace escrow.

The thresholds below are conventions of the indexed token protocol, not chain
consensus rules:

- STATE_DUST_CEILING_SATS: the protocol keeps an asset's state in a tiny
  pay-to-address output (1000 sat, 0.00001 coin, at most) so it never mixes
  with ordinary payment value.
- ESCROW_DUST_CEILING_SATS: marketplace listings lock the state in a
  non-standard script funded with at most 100000 sat (0.001 coin).
- ESCROW_SCRIPT_TYPE: the provider's script classification for such locks.
- DATA_CARRIER_OPCODE: outputs containing it hold protocol payloads and are
  never state outputs.
"""

from dataclasses import dataclass
from typing import Optional

from network.chain import Transaction, TxOutput


STATE_DUST_CEILING_SATS = 1_000
ESCROW_DUST_CEILING_SATS = 100_000
ESCROW_SCRIPT_TYPE = "nonstandard"
DATA_CARRIER_OPCODE = "OP_RETURN"


@dataclass(frozen=True)
class ClassifierRules:
    """Tunable protocol conventions used by classify()."""
    state_dust_ceiling: int = STATE_DUST_CEILING_SATS
    escrow_dust_ceiling: int = ESCROW_DUST_CEILING_SATS
    escrow_script_type: str = ESCROW_SCRIPT_TYPE
    data_carrier_opcode: str = DATA_CARRIER_OPCODE

    def __post_init__(self):
        if self.state_dust_ceiling <= 0 or self.escrow_dust_ceiling <= 0:
            raise ValueError("dust ceilings must be positive")


DEFAULT_RULES = ClassifierRules()


@dataclass(frozen=True)
class StateOutput:
    """The output that carries an asset's state after a transaction."""
    output_index: int
    holder_address: Optional[str]
    is_escrow: bool


def is_data_output(output: TxOutput, rules: ClassifierRules = DEFAULT_RULES) -> bool:
    return rules.data_carrier_opcode in output.asm


def is_escrow_output(output: TxOutput, rules: ClassifierRules = DEFAULT_RULES) -> bool:
    return output.script_type == rules.escrow_script_type and output.value <= rules.escrow_dust_ceiling


def is_holder_output(output: TxOutput, rules: ClassifierRules = DEFAULT_RULES) -> bool:
    return output.address is not None and 0 < output.value <= rules.state_dust_ceiling


def classify(transaction: Transaction, rules: ClassifierRules = DEFAULT_RULES) -> Optional[StateOutput]:
    """
    Locate the asset state output of a transaction.

    Escrow locks take priority over holder outputs; within each pass the
    lowest output index wins.

    Returns:
        StateOutput, or None when no output recreates the state (a burn)
    """
    candidates = [o for o in transaction.outputs if not is_data_output(o, rules)]

    for output in candidates:
        if is_escrow_output(output, rules):
            return StateOutput(output_index=output.n, holder_address=None, is_escrow=True)

    for output in candidates:
        if is_holder_output(output, rules):
            return StateOutput(output_index=output.n, holder_address=output.address, is_escrow=False)

    return None
