import os


def _bool_env(name, default='false'):
    return os.environ.get(name, default).lower() in ('true', '1', 'yes')


class Config:
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL', 'sqlite:///gateway_dev.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Dev mode: permits SQLite and a gateway without chain credentials
    DEV_MODE = _bool_env('DEV_MODE')

    # Chain
    ETHEREUM_RPC_URL = os.environ.get('ETHEREUM_RPC_URL', '')
    NETWORK_ID = int(os.environ.get('NETWORK_ID', '11155111'))  # Sepolia
    CONTRACT_ADDRESS = os.environ.get('CONTRACT_ADDRESS', '')
    PRIVATE_KEY = os.environ.get('PRIVATE_KEY', '')
    GAS_LIMIT = int(os.environ.get('GAS_LIMIT', '300000'))
    # First block searched for escrow event logs (contract deployment block)
    EVENT_FROM_BLOCK = int(os.environ.get('EVENT_FROM_BLOCK', '0'))

    # Payment mode: direct | http | hybrid
    PAYMENT_MODE = os.environ.get('PAYMENT_MODE', 'direct').lower()
    PAYMENT_GATEWAY_URL = os.environ.get('PAYMENT_GATEWAY_URL', '')

    # Request deadlines (seconds), propagated to every chain/ledger/peer call
    MUTATING_TIMEOUT_SECONDS = float(os.environ.get('MUTATING_TIMEOUT_SECONDS', '30'))
    READ_TIMEOUT_SECONDS = float(os.environ.get('READ_TIMEOUT_SECONDS', '10'))

    # Finality wait
    TX_WAIT_TIMEOUT_SECONDS = float(os.environ.get('TX_WAIT_TIMEOUT_SECONDS', '60'))
    TX_MAX_ATTEMPTS = int(os.environ.get('TX_MAX_ATTEMPTS', '3'))

    SERVER_PORT = int(os.environ.get('SERVER_PORT', '8081'))

    @classmethod
    def validate_production(cls):
        """Startup check: reject SQLite and incomplete chain/peer settings outside DEV_MODE."""
        if cls.DEV_MODE:
            return
        if 'sqlite' in cls.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError(
                "FATAL: SQLite is not supported in production mode. "
                "Set DATABASE_URL to a PostgreSQL connection string, "
                "or set DEV_MODE=true for development."
            )
        if cls.PAYMENT_MODE not in ('direct', 'http', 'hybrid'):
            raise RuntimeError(
                f"FATAL: unknown PAYMENT_MODE '{cls.PAYMENT_MODE}'. "
                "Use one of: direct, http, hybrid."
            )
        if cls.PAYMENT_MODE in ('direct', 'hybrid'):
            missing = [name for name in ('ETHEREUM_RPC_URL', 'CONTRACT_ADDRESS', 'PRIVATE_KEY')
                       if not getattr(cls, name)]
            if missing:
                raise RuntimeError(
                    f"FATAL: {', '.join(missing)} required for {cls.PAYMENT_MODE} mode."
                )
        if cls.PAYMENT_MODE in ('http', 'hybrid') and not cls.PAYMENT_GATEWAY_URL:
            raise RuntimeError(
                f"FATAL: PAYMENT_GATEWAY_URL is required for {cls.PAYMENT_MODE} mode."
            )


# Known networks: chain id -> metadata
NETWORKS = {
    1: {
        "name": "ethereum",
        "explorer_url": "https://etherscan.io",
    },
    11155111: {
        "name": "sepolia",
        "explorer_url": "https://sepolia.etherscan.io",
    },
}
