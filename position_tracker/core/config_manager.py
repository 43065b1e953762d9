"""
ConfigManager Component
Responsible for loading and managing configuration from various sources.
"""

import os
import json
import yaml
import logging
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)


DEFAULT_FALLBACK_PRICES = {
    'AERO': 1.13,
    'ETH': 4500,
    'WETH': 4500,
    'USDC': 1.0,
    'USDBC': 1.0,
    'DAI': 1.0,
    'USDT': 1.0,
    'BTC': 67000,
    'WBTC': 67000,
    'CBETH': 4800,
    'STETH': 4480,
    'RETH': 4600,
    'WELL': 0.05,
    'MAMO': 0.1206,
    'THE': 0.3466,
    'GS': 0.06,
    'MORPHO': 2.15
}


class ConfigManager:
    """
    ConfigManager loads and validates configuration from:
    - Environment variables
    - JSON/YAML config files
    - Default values
    """

    def __init__(self, config_file: Optional[str] = None, load_environment: bool = True):
        """
        Initialize the ConfigManager

        Args:
            config_file (str, optional): Path to a config file to load
            load_environment (bool): Apply environment variable overrides
        """
        self.config: Dict[str, Any] = {}

        # Default paths to check for config files
        self.config_paths = [
            './position_tracker.yaml',
            './position_tracker.yml',
            './position_tracker.json',
            os.path.expanduser('~/.position_tracker/config.yaml'),
            os.path.expanduser('~/.position_tracker/config.json')
        ]

        if config_file:
            self.config_paths.insert(0, config_file)

        self._load_defaults()
        self._load_config_files()
        if load_environment:
            self._load_environment_variables()

        self._validate_config()

        logger.info("ConfigManager initialized")
        logger.debug(f"Loaded configuration for {len(self.config)} settings")

    def _load_defaults(self):
        """Load default configuration values"""
        self.config = {
            # Core configuration
            'log_level': 'INFO',
            'log_dir': './logs',
            'log_to_file': True,

            # Persistence port
            'storage': {
                'backend': 'file',  # file or memory
                'path': './data/portfolio_state.json'
            },

            # Per-call retry policy
            'resilience': {
                'max_retries': 2,
                'base_delay': 0.5,   # seconds
                'max_delay': 30.0,
                'jitter': 1.0        # upper bound of random jitter, seconds
            },

            'circuit_breaker': {
                'max_failures': 5,
                'reset_window': 300  # 5 minutes
            },

            'aggregator': {
                'source_timeout': 10.0,  # per attempt
                'deadline': 30.0         # whole aggregation run
            },

            'performance': {
                'retention_days': 90,
                'snapshot_group_window': 3600,
                'dust_threshold': 0.01
            },

            'prices': {
                'base_url': 'https://api.coingecko.com/api/v3',
                'api_key': None,
                'cache_ttl': 60,
                'timeout': 10,
                'fallback': dict(DEFAULT_FALLBACK_PRICES)
            },

            'analytics': {
                'high_concentration_percent': 50,
                'medium_concentration_percent': 30,
                'critical_concentration_percent': 70,
                'liquidity_share_percent': 50,
                'impermanent_loss_share_percent': 40,
                'borrowing_high_share_percent': 30,
                'claimable_threshold_usd': 10,
                'claimable_medium_usd': 50,
                'claimable_high_usd': 100,
                'position_reward_threshold_usd': 1,
                'low_apy_percent': 5,
                'low_apy_min_value_usd': 100,
                'low_yield_high_impact_usd': 1000,
                'assumed_gas_cost_usd': 50,
                # Portfolio risk score points
                'risk_points_high_concentration': 30,
                'risk_points_medium_concentration': 15,
                'risk_points_high_risk_protocol': 20,
                'risk_points_liquidity_share': 25,
                'risk_points_debt': 20,
                'liquidation_risk_per_debt_position': 25,
                'diversification_points_per_protocol': 10,
                'diversification_protocol_cap': 50,
                'diversification_concentration_points': 50,
                # Position health score
                'health_very_low_apy_percent': 2,
                'health_very_low_apy_penalty': 20,
                'health_low_apy_percent': 5,
                'health_low_apy_penalty': 10,
                'health_high_apy_percent': 20,
                'health_high_apy_bonus': 10,
                'health_immature_protocol_penalty': 15,
                'health_tiny_value_usd': 50,
                'health_tiny_value_penalty': 25,
                'health_small_value_usd': 100,
                'health_small_value_penalty': 10,
                'health_debt_penalty': 30,
                'critical_debt_health_score': 40,
                'high_risk_health_score': 30,
                'medium_risk_health_score': 60,
                'yield_efficiency_tiers': [[15, 90], [10, 75], [5, 60], [2, 40]],  # [APY floor, score]
                'min_yield_efficiency': 20,
                'stable_pair_il_risk': 5,
                'volatile_pair_il_risk': 35,
                'out_of_range_il_penalty': 15,
                'consolidate_below_value_usd': 100,
                'research_below_apy_percent': 3,
                'migrate_below_health_score': 50,
                'gas_warning_percent': 10,
                'real_time_compounding_protocols': ['compound-v3', 'aave'],
                'manual_protocols': ['manual'],
                'high_risk_protocols': ['manual', 'new-protocol'],
                'mature_protocols': ['uniswap-v3', 'aave', 'compound-v3', 'lido', 'moonwell', 'aerodrome'],
                'protocol_networks': {
                    'uniswap-v3': 'Multi-chain',
                    'aerodrome': 'Base',
                    'moonwell': 'Base',
                    'mamo': 'Base',
                    'compound-v3': 'Base',
                    'aave': 'Base',
                    'morpho': 'Base',
                    'beefy': 'Base',
                    'extra-finance': 'Base',
                    'thena': 'BSC',
                    'gammaswap': 'Multi-chain'
                },
                'protocol_risk_scores': {
                    'uniswap-v3': 10,
                    'aave': 15,
                    'compound-v3': 15,
                    'lido': 20,
                    'moonwell': 25,
                    'aerodrome': 30,
                    'morpho': 35,
                    'beefy': 40,
                    'manual': 80
                }
            },

            'optimizer': {
                'compound_min_claimable_usd': 10,
                'compound_gain_fraction': 0.1,
                'migration_alternatives': [
                    {'protocol': 'moonwell', 'apy_multiplier': 1.2, 'il_risk': 15,
                     'liquidation_risk': 10, 'smart_contract_risk': 20},
                    {'protocol': 'compound-v3', 'apy_multiplier': 1.15, 'il_risk': 0,
                     'liquidation_risk': 15, 'smart_contract_risk': 15}
                ],
                'migration_min_improvement': 1.1,  # target APY must beat current by 10%
                'rebalance_below_health_score': 70,
                'diversify_below_protocols': 3,
                'diversify_min_value_usd': 1000,
                'leverage_below_apy_percent': 8,
                'leverage_min_value_usd': 5000,
                'high_impact_min_gain_usd': 100,
                'high_impact_min_confidence': 70,
                'quick_win_max_gas_usd': 50
            },

            # Orchestrator loop
            'refresh': {
                'interval': 60
            }
        }

    def _load_config_files(self):
        """Load configuration from files"""
        for config_path in self.config_paths:
            if os.path.exists(config_path):
                try:
                    with open(config_path, 'r') as file:
                        if config_path.endswith('.json'):
                            file_config = json.load(file)
                        elif config_path.endswith(('.yaml', '.yml')):
                            file_config = yaml.safe_load(file)
                        else:
                            logger.warning(f"Unsupported config file format: {config_path}")
                            continue

                    if not isinstance(file_config, dict):
                        logger.warning(f"Ignoring config file without a mapping at the top level: {config_path}")
                        continue

                    self._deep_merge(self.config, file_config)
                    logger.info(f"Loaded configuration from {config_path}")

                    # First readable file wins
                    break
                except (OSError, ValueError, yaml.YAMLError) as e:
                    logger.error(f"Error loading config from {config_path}: {str(e)}")

    def _load_environment_variables(self):
        """Load configuration from environment variables"""
        env_mappings = {
            'POSITION_TRACKER_LOG_LEVEL': 'log_level',
            'POSITION_TRACKER_LOG_DIR': 'log_dir',

            'POSITION_TRACKER_STORAGE_BACKEND': 'storage.backend',
            'POSITION_TRACKER_STORAGE_PATH': 'storage.path',

            'COINGECKO_API_KEY': 'prices.api_key',
            'PRICE_API_BASE_URL': 'prices.base_url',

            'CIRCUIT_BREAKER_MAX_FAILURES': 'circuit_breaker.max_failures',
            'CIRCUIT_BREAKER_RESET_WINDOW': 'circuit_breaker.reset_window',

            'AGGREGATOR_DEADLINE': 'aggregator.deadline',
            'AGGREGATOR_SOURCE_TIMEOUT': 'aggregator.source_timeout'
        }

        for env_var, config_path in env_mappings.items():
            value = os.environ.get(env_var)
            if value is not None:
                self.set(config_path, self._coerce(value))
                logger.debug(f"Set {config_path} from environment variable {env_var}")

    @staticmethod
    def _coerce(value: str) -> Any:
        """Convert an environment string to bool/int/float where it looks like one"""
        if value.lower() in ('true', 'yes'):
            return True
        if value.lower() in ('false', 'no'):
            return False
        if value.isdigit():
            return int(value)
        if value.replace('.', '', 1).isdigit() and value.count('.') <= 1:
            return float(value)
        return value

    def _validate_config(self):
        """Validate configuration values, falling back to defaults where unusable"""
        if self.get('storage.backend') not in ('file', 'memory'):
            logger.warning(f"Unknown storage backend '{self.get('storage.backend')}', using memory")
            self.set('storage.backend', 'memory')

        max_failures = self.get('circuit_breaker.max_failures')
        if not isinstance(max_failures, int) or isinstance(max_failures, bool) or max_failures < 1:
            logger.warning("circuit_breaker.max_failures must be a positive integer, using 5")
            self.set('circuit_breaker.max_failures', 5)

        for path, default in (('aggregator.deadline', 30.0),
                              ('aggregator.source_timeout', 10.0),
                              ('circuit_breaker.reset_window', 300)):
            value = self.get(path)
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
                logger.warning(f"{path} must be a positive number, using {default}")
                self.set(path, default)

        if not self.get('prices.api_key'):
            logger.debug("No price API key configured, public rate limits apply")

    def _deep_merge(self, base: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
        """
        Deep merge two dictionaries

        Args:
            base (Dict[str, Any]): Base dictionary
            update (Dict[str, Any]): Dictionary to merge on top

        Returns:
            Dict[str, Any]: Merged dictionary
        """
        for key, value in update.items():
            if isinstance(value, dict) and key in base and isinstance(base[key], dict):
                self._deep_merge(base[key], value)
            else:
                base[key] = value
        return base

    def get(self, path: str, default: Any = None) -> Any:
        """
        Get a configuration value by path

        Args:
            path (str): Dot-separated path to the config value
            default (Any, optional): Default value if path not found

        Returns:
            Any: Configuration value
        """
        current = self.config
        try:
            for part in path.split('.'):
                current = current[part]
            return current
        except (KeyError, TypeError):
            return default

    def set(self, path: str, value: Any):
        """
        Set a configuration value by path

        Args:
            path (str): Dot-separated path to the config value
            value (Any): Value to set
        """
        parts = path.split('.')

        current = self.config
        for part in parts[:-1]:
            if part not in current or not isinstance(current[part], dict):
                current[part] = {}
            current = current[part]

        current[parts[-1]] = value

    def get_all(self) -> Dict[str, Any]:
        """
        Get the entire configuration dictionary

        Returns:
            Dict[str, Any]: Complete configuration
        """
        return self.config

    def save_to_file(self, file_path: str) -> bool:
        """
        Save current configuration to a file

        Args:
            file_path (str): Path to save the configuration

        Returns:
            bool: True if successful, False otherwise
        """
        try:
            os.makedirs(os.path.dirname(os.path.abspath(file_path)), exist_ok=True)

            if file_path.endswith('.json'):
                with open(file_path, 'w') as f:
                    json.dump(self.config, f, indent=2)
            elif file_path.endswith(('.yaml', '.yml')):
                with open(file_path, 'w') as f:
                    yaml.dump(self.config, f, default_flow_style=False)
            else:
                logger.error(f"Unsupported file format for {file_path}")
                return False

            logger.info(f"Configuration saved to {file_path}")
            return True
        except OSError as e:
            logger.error(f"Error saving configuration to {file_path}: {str(e)}")
            return False
