import json
import os

INSTANCE_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'instance')

# Same endpoints clusterApiUrl() hands out
SOLANA_CLUSTERS = {
    'devnet': 'https://api.devnet.solana.com',
    'testnet': 'https://api.testnet.solana.com',
    'mainnet-beta': 'https://api.mainnet-beta.solana.com',
}

DEFAULT_ROUTE_NAME = 'cardano-to-solana'


class BridgeRoute:
    """
    Chain-specific constants for one bridge route: where to settle, which
    token, and which authority signs.
    """

    def __init__(self, name, network='devnet', token_id=None, secret_key=None, rpc_url=None):
        self.name = name
        self.network = network
        self.token_id = token_id
        self.secret_key = secret_key
        self.rpc_url = rpc_url or SOLANA_CLUSTERS.get(network)

        if not self.rpc_url:
            raise ValueError(f'Unknown Solana network for route {name}: {network}')

    @classmethod
    def from_dict(cls, name, data):
        return cls(
            name=name,
            network=data.get('network', 'devnet'),
            token_id=data.get('tokenId'),
            secret_key=data.get('secretKey'),
            rpc_url=data.get('rpcUrl'),
        )

    def __repr__(self):
        return f'<BridgeRoute {self.name} network={self.network} token={self.token_id}>'


def load_routes(config):
    """
    Build the route table from the env-configured default route plus the
    optional BRIDGE_ROUTES_FILE.
    """
    routes = {}

    name = config.get('BRIDGE_ROUTE_NAME', DEFAULT_ROUTE_NAME)
    routes[name] = BridgeRoute(
        name=name,
        network=config.get('SOL_NET', 'devnet'),
        token_id=config.get('SOL_TOKEN_ID'),
        secret_key=config.get('SOL_APP_SECRET_KEY'),
        rpc_url=config.get('SOLANA_RPC_URL'),
    )

    routes_file = config.get('BRIDGE_ROUTES_FILE')
    if routes_file:
        with open(routes_file, 'r') as f:
            for route_name, data in json.load(f).items():
                routes[route_name] = BridgeRoute.from_dict(route_name, data)

    return routes


class Config:
    SQLALCHEMY_DATABASE_URI = os.getenv(
        'DATABASE_URL', f'sqlite:///{os.path.join(INSTANCE_DIR, "bridge.db")}'
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    SOL_NET = os.getenv('SOL_NET', 'devnet')
    SOLANA_RPC_URL = os.getenv('SOLANA_RPC_URL')
    SOL_TOKEN_ID = os.getenv('SOL_TOKEN_ID')
    SOL_APP_SECRET_KEY = os.getenv('SOL_APP_SECRET_KEY')

    BRIDGE_ROUTE_NAME = os.getenv('BRIDGE_ROUTE_NAME', DEFAULT_ROUTE_NAME)
    BRIDGE_ROUTES_FILE = os.getenv('BRIDGE_ROUTES_FILE')

    BRIDGE_MAX_ATTEMPTS = int(os.getenv('BRIDGE_MAX_ATTEMPTS', 5))
    BRIDGE_RETRY_DELAY = float(os.getenv('BRIDGE_RETRY_DELAY', 1.0))
    BRIDGE_RETRY_MAX_DELAY = float(os.getenv('BRIDGE_RETRY_MAX_DELAY', 30.0))
    # Renewed before every transfer; has to outlast the slowest single request
    BRIDGE_LEASE_SECONDS = int(os.getenv('BRIDGE_LEASE_SECONDS', 900))
    BRIDGE_MAX_DURATION = int(os.getenv('BRIDGE_MAX_DURATION', 300))

    # Callable taking a BridgeRoute and returning a chain client; None means Solana
    BRIDGE_CHAIN_FACTORY = None

    CRON_SECRET = os.getenv('CRON_SECRET')
    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    SOL_NET = 'devnet'
    SOLANA_RPC_URL = None
    SOL_TOKEN_ID = 'So11111111111111111111111111111111111111112'
    SOL_APP_SECRET_KEY = None
    BRIDGE_ROUTE_NAME = DEFAULT_ROUTE_NAME
    BRIDGE_ROUTES_FILE = None
    BRIDGE_RETRY_DELAY = 0.0
    BRIDGE_RETRY_MAX_DELAY = 0.0
    CRON_SECRET = None
    LOG_LEVEL = 'DEBUG'
