"""
Ledger system wiring: storage, converter and ledger built from configuration
"""

from typing import Optional

from .config import LedgerConfig, get_config
from .currency import Currency, RateTableConverter
from .storage import create_storage
from .ledger import AccountLedger


class LedgerSystem:
    """Bank ledger with all components initialized"""

    def __init__(self, config: Optional[LedgerConfig] = None):
        self.config = config or get_config()
        self.storage = create_storage(self.config.database_url)
        self.converter = RateTableConverter.from_mapping(self.config.exchange_rates)
        self.ledger = AccountLedger(
            self.storage,
            self.converter,
            default_currency=Currency.from_code(self.config.default_currency)
        )

    def close(self) -> None:
        self.storage.close()
