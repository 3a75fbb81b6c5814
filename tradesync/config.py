import copy
import os

import yaml

DEFAULTS = {
    'system': {
        'environment': 'local',
        'log_level': 'INFO',
        'symbol': 'BTC/USDT',
        'supported_symbols': ['BTC/USDT', 'ETH/USDT', 'SOL/USDT'],
        'user_id': '',
    },
    'server': {
        'rest_base_url': 'http://localhost:8080/api',
        'ws_url': 'ws://localhost:8888/ws',
        'request_timeout_seconds': 3.0,
        'reconnect_delay_seconds': 5.0,
        'heartbeat_seconds': 30.0,
    },
    'market_data': {
        'providers': ['backend', 'binance', 'coingecko'],
        'backend_url': 'http://localhost:8080',
        'timeouts': {'backend': 3.0, 'binance': 5.0, 'coingecko': 5.0},
        'coingecko_ids': {'BTC': 'bitcoin', 'ETH': 'ethereum', 'SOL': 'solana'},
    },
    'state': {
        'trade_tape_limit': 100,
        'trade_history_limit': 50,
    },
    'audit': {
        'order_log': 'logs/orders.csv',
    },
}


def _merge(base: dict, override: dict) -> dict:
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value
    return base


def load_config(path: str = "config.yaml") -> dict:
    """Loads YAML settings over the built-in defaults. A missing file means defaults only."""
    config = copy.deepcopy(DEFAULTS)
    if os.path.exists(path):
        with open(path, "r") as f:
            loaded = yaml.safe_load(f) or {}
        if not isinstance(loaded, dict):
            raise ValueError(f"{path}: top level must be a mapping")
        _merge(config, loaded)
    return config
