"""
Portfolio Analytics
Stateless risk, diversification, allocation and opportunity metrics computed
from the aggregated position list. Every threshold is a named, overridable
setting read from the ``analytics`` configuration section.
"""

import logging
from typing import Dict, Any, List, Optional

import numpy as np

from position_tracker.core.models import Position, PositionKind

logger = logging.getLogger(__name__)

STABLECOINS = {'USDC', 'USDBC', 'USDT', 'DAI'}

DEFAULT_MATURE_PROTOCOLS = ['uniswap-v3', 'aave', 'compound-v3', 'lido', 'moonwell', 'aerodrome']

# (APY floor, efficiency score), highest floor first
DEFAULT_YIELD_EFFICIENCY_TIERS = [[15, 90.0], [10, 75.0], [5, 60.0], [2, 40.0]]


class AnalyticsThresholds:
    """Thresholds, score weights and lookup tables used by the analytics"""

    def __init__(self,
                 # Concentration and exposure shares (percent of portfolio value)
                 high_concentration_percent: float = 50,
                 medium_concentration_percent: float = 30,
                 critical_concentration_percent: float = 70,
                 liquidity_share_percent: float = 50,
                 impermanent_loss_share_percent: float = 40,
                 borrowing_high_share_percent: float = 30,
                 # Rewards and yield opportunities
                 claimable_threshold_usd: float = 10,
                 claimable_medium_usd: float = 50,
                 claimable_high_usd: float = 100,
                 position_reward_threshold_usd: float = 1,
                 low_apy_percent: float = 5,
                 low_apy_min_value_usd: float = 100,
                 low_yield_high_impact_usd: float = 1000,
                 assumed_gas_cost_usd: float = 50,
                 # Portfolio risk score points
                 risk_points_high_concentration: float = 30,
                 risk_points_medium_concentration: float = 15,
                 risk_points_high_risk_protocol: float = 20,
                 risk_points_liquidity_share: float = 25,
                 risk_points_debt: float = 20,
                 liquidation_risk_per_debt_position: float = 25,
                 # Diversification score
                 diversification_points_per_protocol: float = 10,
                 diversification_protocol_cap: float = 50,
                 diversification_concentration_points: float = 50,
                 # Position health score
                 health_very_low_apy_percent: float = 2,
                 health_very_low_apy_penalty: float = 20,
                 health_low_apy_percent: float = 5,
                 health_low_apy_penalty: float = 10,
                 health_high_apy_percent: float = 20,
                 health_high_apy_bonus: float = 10,
                 health_immature_protocol_penalty: float = 15,
                 health_tiny_value_usd: float = 50,
                 health_tiny_value_penalty: float = 25,
                 health_small_value_usd: float = 100,
                 health_small_value_penalty: float = 10,
                 health_debt_penalty: float = 30,
                 # Position risk levels (health score cut-offs)
                 critical_debt_health_score: float = 40,
                 high_risk_health_score: float = 30,
                 medium_risk_health_score: float = 60,
                 # Yield efficiency
                 yield_efficiency_tiers: Optional[List[List[float]]] = None,
                 min_yield_efficiency: float = 20,
                 # Impermanent loss estimates for liquidity positions
                 stable_pair_il_risk: float = 5,
                 volatile_pair_il_risk: float = 35,
                 out_of_range_il_penalty: float = 15,
                 # Position recommendations and warnings
                 consolidate_below_value_usd: float = 100,
                 research_below_apy_percent: float = 3,
                 migrate_below_health_score: float = 50,
                 gas_warning_percent: float = 10,
                 # Protocol tables
                 real_time_compounding_protocols: Optional[List[str]] = None,
                 manual_protocols: Optional[List[str]] = None,
                 high_risk_protocols: Optional[List[str]] = None,
                 mature_protocols: Optional[List[str]] = None,
                 protocol_networks: Optional[Dict[str, str]] = None,
                 protocol_risk_scores: Optional[Dict[str, float]] = None,
                 default_protocol_risk: float = 50):
        self.high_concentration_percent = high_concentration_percent
        self.medium_concentration_percent = medium_concentration_percent
        self.critical_concentration_percent = critical_concentration_percent
        self.liquidity_share_percent = liquidity_share_percent
        self.impermanent_loss_share_percent = impermanent_loss_share_percent
        self.borrowing_high_share_percent = borrowing_high_share_percent

        self.claimable_threshold_usd = claimable_threshold_usd
        self.claimable_medium_usd = claimable_medium_usd
        self.claimable_high_usd = claimable_high_usd
        self.position_reward_threshold_usd = position_reward_threshold_usd
        self.low_apy_percent = low_apy_percent
        self.low_apy_min_value_usd = low_apy_min_value_usd
        self.low_yield_high_impact_usd = low_yield_high_impact_usd
        self.assumed_gas_cost_usd = assumed_gas_cost_usd

        self.risk_points_high_concentration = risk_points_high_concentration
        self.risk_points_medium_concentration = risk_points_medium_concentration
        self.risk_points_high_risk_protocol = risk_points_high_risk_protocol
        self.risk_points_liquidity_share = risk_points_liquidity_share
        self.risk_points_debt = risk_points_debt
        self.liquidation_risk_per_debt_position = liquidation_risk_per_debt_position

        self.diversification_points_per_protocol = diversification_points_per_protocol
        self.diversification_protocol_cap = diversification_protocol_cap
        self.diversification_concentration_points = diversification_concentration_points

        self.health_very_low_apy_percent = health_very_low_apy_percent
        self.health_very_low_apy_penalty = health_very_low_apy_penalty
        self.health_low_apy_percent = health_low_apy_percent
        self.health_low_apy_penalty = health_low_apy_penalty
        self.health_high_apy_percent = health_high_apy_percent
        self.health_high_apy_bonus = health_high_apy_bonus
        self.health_immature_protocol_penalty = health_immature_protocol_penalty
        self.health_tiny_value_usd = health_tiny_value_usd
        self.health_tiny_value_penalty = health_tiny_value_penalty
        self.health_small_value_usd = health_small_value_usd
        self.health_small_value_penalty = health_small_value_penalty
        self.health_debt_penalty = health_debt_penalty

        self.critical_debt_health_score = critical_debt_health_score
        self.high_risk_health_score = high_risk_health_score
        self.medium_risk_health_score = medium_risk_health_score

        tiers = DEFAULT_YIELD_EFFICIENCY_TIERS if yield_efficiency_tiers is None else yield_efficiency_tiers
        self.yield_efficiency_tiers = sorted(([float(floor), float(score)] for floor, score in tiers),
                                             key=lambda tier: tier[0], reverse=True)
        self.min_yield_efficiency = min_yield_efficiency

        self.stable_pair_il_risk = stable_pair_il_risk
        self.volatile_pair_il_risk = volatile_pair_il_risk
        self.out_of_range_il_penalty = out_of_range_il_penalty

        self.consolidate_below_value_usd = consolidate_below_value_usd
        self.research_below_apy_percent = research_below_apy_percent
        self.migrate_below_health_score = migrate_below_health_score
        self.gas_warning_percent = gas_warning_percent

        self.real_time_compounding_protocols = list(['compound-v3', 'aave'] if real_time_compounding_protocols is None
                                                    else real_time_compounding_protocols)
        self.manual_protocols = list(['manual'] if manual_protocols is None else manual_protocols)
        self.high_risk_protocols = list(high_risk_protocols or ['manual', 'new-protocol'])
        self.mature_protocols = list(DEFAULT_MATURE_PROTOCOLS if mature_protocols is None else mature_protocols)
        self.protocol_networks = dict(protocol_networks or {})
        self.protocol_risk_scores = dict(protocol_risk_scores or {})
        self.default_protocol_risk = default_protocol_risk

    @classmethod
    def from_config(cls, config_manager) -> 'AnalyticsThresholds':
        settings = dict(config_manager.get('analytics', {}) or {})
        known = cls().__dict__.keys()
        unknown = [key for key in settings if key not in known]
        for key in unknown:
            logger.warning(f"Ignoring unknown analytics setting '{key}'")
            settings.pop(key)
        return cls(**settings)


class RiskFactor:
    """A detected portfolio risk"""

    def __init__(self,
                 risk_type: str,
                 severity: str,
                 title: str,
                 description: str,
                 affected_value: float,
                 affected_positions: List[str],
                 recommendation: Optional[str] = None):
        self.type = risk_type
        self.severity = severity
        self.title = title
        self.description = description
        self.affected_value = affected_value
        self.affected_positions = affected_positions
        self.recommendation = recommendation

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.type,
            'severity': self.severity,
            'title': self.title,
            'description': self.description,
            'affected_value': self.affected_value,
            'affected_positions': self.affected_positions,
            'recommendation': self.recommendation
        }


class Opportunity:
    """A detected optimization opportunity"""

    def __init__(self,
                 opportunity_type: str,
                 impact: str,
                 title: str,
                 description: str,
                 potential_gain: float,
                 effort: str,
                 positions: List[str],
                 action: Optional[str] = None):
        self.type = opportunity_type
        self.impact = impact
        self.title = title
        self.description = description
        self.potential_gain = potential_gain
        self.effort = effort
        self.positions = positions
        self.action = action

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.type,
            'impact': self.impact,
            'title': self.title,
            'description': self.description,
            'potential_gain': self.potential_gain,
            'effort': self.effort,
            'positions': self.positions,
            'action': self.action
        }


class PortfolioMetrics:
    """Result of analyze_portfolio()"""

    def __init__(self, **values):
        self.total_value: float = values.get('total_value', 0.0)
        self.total_claimable: float = values.get('total_claimable', 0.0)
        self.weighted_average_apy: float = values.get('weighted_average_apy', 0.0)
        self.position_count: int = values.get('position_count', 0)
        self.protocol_count: int = values.get('protocol_count', 0)
        self.network_count: int = values.get('network_count', 0)
        self.max_protocol_share: float = values.get('max_protocol_share', 0.0)
        self.protocol_concentration: float = values.get('protocol_concentration', 0.0)
        self.diversification_score: float = values.get('diversification_score', 0.0)
        self.risk_score: float = values.get('risk_score', 0.0)
        self.liquidation_risk: float = values.get('liquidation_risk', 0.0)
        self.estimated_daily_yield: float = values.get('estimated_daily_yield', 0.0)
        self.estimated_monthly_yield: float = values.get('estimated_monthly_yield', 0.0)
        self.estimated_annual_yield: float = values.get('estimated_annual_yield', 0.0)
        self.protocol_allocation: Dict[str, Dict[str, float]] = values.get('protocol_allocation', {})
        self.type_allocation: Dict[str, Dict[str, float]] = values.get('type_allocation', {})
        self.network_allocation: Dict[str, Dict[str, float]] = values.get('network_allocation', {})
        self.token_allocation: Dict[str, Dict[str, float]] = values.get('token_allocation', {})
        self.risk_factors: List[RiskFactor] = values.get('risk_factors', [])
        self.opportunities: List[Opportunity] = values.get('opportunities', [])

    def to_dict(self) -> Dict[str, Any]:
        result = dict(self.__dict__)
        result['risk_factors'] = [r.to_dict() for r in self.risk_factors]
        result['opportunities'] = [o.to_dict() for o in self.opportunities]
        return result


class PositionAnalysis:
    """Health and yield analysis of a single position"""

    def __init__(self, position: Position, **values):
        self.position = position
        self.health_score: float = values['health_score']
        self.risk_level: str = values['risk_level']
        self.yield_efficiency: float = values['yield_efficiency']
        self.compounding_frequency: str = values['compounding_frequency']
        self.liquidation_distance: Optional[float] = values.get('liquidation_distance')
        self.impermanent_loss_risk: Optional[float] = values.get('impermanent_loss_risk')
        self.smart_contract_risk: float = values['smart_contract_risk']
        self.estimated_daily_earnings: float = values['estimated_daily_earnings']
        self.gas_cost_impact: float = values['gas_cost_impact']
        self.recommendations: List[str] = values.get('recommendations', [])
        self.warnings: List[str] = values.get('warnings', [])

    def to_dict(self) -> Dict[str, Any]:
        result = {k: v for k, v in self.__dict__.items() if k != 'position'}
        result['position_id'] = self.position.id
        return result


class PortfolioAnalytics:
    """
    PortfolioAnalytics computes:
    - allocations by protocol, kind, network and token
    - concentration, diversification, risk and liquidation scores
    - risk factors and optimization opportunities
    - per-position health analysis
    """

    def __init__(self, thresholds: Optional[AnalyticsThresholds] = None):
        """
        Initialize analytics

        Args:
            thresholds (AnalyticsThresholds, optional): Thresholds, defaults when omitted
        """
        self.thresholds = thresholds or AnalyticsThresholds()

    @classmethod
    def from_config(cls, config_manager) -> 'PortfolioAnalytics':
        return cls(AnalyticsThresholds.from_config(config_manager))

    def analyze_portfolio(self, positions: List[Position]) -> PortfolioMetrics:
        """
        Analyze a complete portfolio

        Args:
            positions (List[Position]): Aggregated positions

        Returns:
            PortfolioMetrics: Portfolio metrics, all zero for an empty portfolio
        """
        if not positions:
            return PortfolioMetrics()

        values = np.array([p.value for p in positions], dtype=float)
        total_value = float(values.sum())
        total_claimable = float(sum(p.claimable for p in positions))
        weighted_apy = self.weighted_average_apy(positions)

        protocol_allocation = self.calculate_allocation(positions, lambda p: p.protocol, total_value)
        type_allocation = self.calculate_allocation(positions, lambda p: p.kind.value, total_value)
        network_allocation = self.calculate_allocation(positions, self.get_position_network, total_value)
        token_allocation = self.calculate_token_allocation(positions, total_value)

        estimated_annual_yield = total_value * weighted_apy / 100
        estimated_daily_yield = estimated_annual_yield / 365

        return PortfolioMetrics(
            total_value=total_value,
            total_claimable=total_claimable,
            weighted_average_apy=weighted_apy,
            position_count=len(positions),
            protocol_count=len(protocol_allocation),
            network_count=len(network_allocation),
            max_protocol_share=self.max_share(protocol_allocation),
            protocol_concentration=self.herfindahl_index(protocol_allocation),
            diversification_score=self.calculate_diversification_score(protocol_allocation, type_allocation),
            risk_score=self.calculate_risk_score(positions, protocol_allocation),
            liquidation_risk=self.calculate_liquidation_risk(positions),
            estimated_daily_yield=estimated_daily_yield,
            estimated_monthly_yield=estimated_daily_yield * 30,
            estimated_annual_yield=estimated_annual_yield,
            protocol_allocation=protocol_allocation,
            type_allocation=type_allocation,
            network_allocation=network_allocation,
            token_allocation=token_allocation,
            risk_factors=self.identify_risk_factors(positions, protocol_allocation, total_value),
            opportunities=self.identify_opportunities(positions)
        )

    @staticmethod
    def weighted_average_apy(positions: List[Position]) -> float:
        values = np.array([p.value for p in positions], dtype=float)
        if values.sum() <= 0:
            return 0.0
        apys = np.array([p.apy for p in positions], dtype=float)
        return float(np.average(apys, weights=values))

    @staticmethod
    def calculate_allocation(positions: List[Position], key, total_value: float) -> Dict[str, Dict[str, float]]:
        """
        Group position value by a key

        Args:
            positions (List[Position]): Positions
            key (Callable): Maps a position to its group name
            total_value (float): Portfolio value used for percentages

        Returns:
            Dict[str, Dict[str, float]]: Group -> {'value', 'percentage', 'count'}
        """
        allocation: Dict[str, Dict[str, float]] = {}
        for position in positions:
            group = allocation.setdefault(key(position), {'value': 0.0, 'percentage': 0.0, 'count': 0})
            group['value'] += position.value
            group['count'] += 1

        for group in allocation.values():
            group['percentage'] = group['value'] / total_value * 100 if total_value > 0 else 0.0
        return allocation

    @staticmethod
    def calculate_token_allocation(positions: List[Position], total_value: float) -> Dict[str, Dict[str, float]]:
        allocation: Dict[str, Dict[str, float]] = {}
        for position in positions:
            for symbol in {t.symbol for t in position.tokens}:
                allocation.setdefault(symbol, {'value': 0.0, 'percentage': 0.0, 'positions': 0})['positions'] += 1
            for token in position.tokens:
                allocation[token.symbol]['value'] += token.value

        for group in allocation.values():
            group['percentage'] = group['value'] / total_value * 100 if total_value > 0 else 0.0
        return allocation

    @staticmethod
    def herfindahl_index(allocation: Dict[str, Dict[str, float]]) -> float:
        """Sum of squared shares, 1.0 for a single group"""
        if not allocation:
            return 0.0
        shares = np.array([group['percentage'] for group in allocation.values()], dtype=float) / 100
        return float(np.sum(np.square(shares)))

    @staticmethod
    def max_share(allocation: Dict[str, Dict[str, float]]) -> float:
        if not allocation:
            return 0.0
        return float(np.max([group['percentage'] for group in allocation.values()]))

    def calculate_diversification_score(self,
                                        protocol_allocation: Dict[str, Dict[str, float]],
                                        type_allocation: Dict[str, Dict[str, float]]) -> float:
        """
        Diversification score in [0, 100]: points per protocol up to a cap
        and up to a second budget for low protocol and kind concentration
        (50 points each by default)
        """
        t = self.thresholds
        protocol_diversity = min(len(protocol_allocation) * t.diversification_points_per_protocol,
                                 t.diversification_protocol_cap)
        concentration = self.herfindahl_index(protocol_allocation) + self.herfindahl_index(type_allocation)
        concentration_score = max(0.0, t.diversification_concentration_points
                                  - concentration * t.diversification_concentration_points)
        return min(100.0, protocol_diversity + concentration_score)

    def calculate_risk_score(self,
                             positions: List[Position],
                             protocol_allocation: Dict[str, Dict[str, float]]) -> float:
        """
        Risk score in [0, 100] from weighted flags

        Args:
            positions (List[Position]): Positions
            protocol_allocation (Dict): Protocol allocation

        Returns:
            float: Risk score
        """
        t = self.thresholds
        score = 0

        max_share = self.max_share(protocol_allocation)
        if max_share > t.high_concentration_percent:
            score += t.risk_points_high_concentration
        elif max_share > t.medium_concentration_percent:
            score += t.risk_points_medium_concentration

        if any(p.protocol in t.high_risk_protocols for p in positions):
            score += t.risk_points_high_risk_protocol

        total_value = sum(p.value for p in positions)
        liquidity_value = sum(p.value for p in positions if p.kind == PositionKind.LIQUIDITY)
        if total_value > 0 and liquidity_value / total_value * 100 > t.liquidity_share_percent:
            score += t.risk_points_liquidity_share

        if any(p.is_debt for p in positions):
            score += t.risk_points_debt

        return float(min(100, score))

    def calculate_liquidation_risk(self, positions: List[Position]) -> float:
        debt_positions = [p for p in positions if p.is_debt]
        return float(min(100, len(debt_positions) * self.thresholds.liquidation_risk_per_debt_position))

    def identify_risk_factors(self,
                              positions: List[Position],
                              protocol_allocation: Dict[str, Dict[str, float]],
                              total_value: float) -> List[RiskFactor]:
        t = self.thresholds
        risks = []

        for protocol, allocation in protocol_allocation.items():
            affected = [p.id for p in positions if p.protocol == protocol]
            description = f"{allocation['percentage']:.1f}% of portfolio is in {protocol}"

            if allocation['percentage'] > t.critical_concentration_percent:
                risks.append(RiskFactor(
                    'high-concentration', 'high', f"High {protocol} Concentration", description,
                    allocation['value'], affected,
                    'Consider diversifying into other protocols to reduce concentration risk'
                ))
            elif allocation['percentage'] > t.high_concentration_percent:
                risks.append(RiskFactor(
                    'high-concentration', 'medium', f"Medium {protocol} Concentration", description,
                    allocation['value'], affected,
                    'Monitor concentration levels and consider diversification'
                ))

        debt_positions = [p for p in positions if p.is_debt]
        if debt_positions:
            debt_value = sum(abs(p.value) for p in debt_positions)
            high = debt_value > total_value * t.borrowing_high_share_percent / 100
            risks.append(RiskFactor(
                'liquidation-risk', 'high' if high else 'medium', 'Liquidation Risk Detected',
                f"{len(debt_positions)} borrowing positions with ${debt_value:.2f} exposure",
                debt_value, [p.id for p in debt_positions],
                'Monitor health factors and maintain adequate collateral ratios'
            ))

        lp_positions = [p for p in positions if p.kind == PositionKind.LIQUIDITY]
        if lp_positions and total_value > 0:
            lp_value = sum(p.value for p in lp_positions)
            if lp_value > total_value * t.impermanent_loss_share_percent / 100:
                risks.append(RiskFactor(
                    'impermanent-loss', 'medium', 'Impermanent Loss Exposure',
                    f"{lp_value / total_value * 100:.1f}% of portfolio in liquidity positions",
                    lp_value, [p.id for p in lp_positions],
                    'Monitor token price correlations and consider single-sided staking alternatives'
                ))

        return risks

    def identify_opportunities(self, positions: List[Position]) -> List[Opportunity]:
        t = self.thresholds
        opportunities = []

        total_claimable = sum(p.claimable for p in positions)
        if total_claimable > t.claimable_threshold_usd:
            if total_claimable > t.claimable_high_usd:
                impact = 'high'
            elif total_claimable > t.claimable_medium_usd:
                impact = 'medium'
            else:
                impact = 'low'

            opportunities.append(Opportunity(
                'compound-rewards', impact, 'Compound Pending Rewards',
                f"${total_claimable:.2f} in claimable rewards ready to compound",
                total_claimable, 'low',
                [p.id for p in positions if p.claimable > t.position_reward_threshold_usd],
                'Claim and reinvest rewards to maximize compounding'
            ))

        low_yield = [p for p in positions
                     if p.apy < t.low_apy_percent and p.value > t.low_apy_min_value_usd and not p.is_debt]
        if low_yield:
            low_yield_value = sum(p.value for p in low_yield)
            opportunities.append(Opportunity(
                'yield-optimization',
                'high' if low_yield_value > t.low_yield_high_impact_usd else 'medium',
                'Optimize Low-Yield Positions',
                f"${low_yield_value:.2f} in positions earning less than {t.low_apy_percent}% APY",
                low_yield_value * t.low_apy_percent / 100, 'medium',
                [p.id for p in low_yield],
                'Research higher-yield alternatives for these assets'
            ))

        return opportunities

    def get_position_network(self, position: Position) -> str:
        if position.metadata.network:
            return position.metadata.network
        return self.thresholds.protocol_networks.get(position.protocol, 'Unknown')

    def analyze_position(self, position: Position) -> PositionAnalysis:
        """
        Analyze the health of one position

        Args:
            position (Position): Position to analyze

        Returns:
            PositionAnalysis: Position analysis
        """
        health_score = self.calculate_health_score(position)
        risk_level = self.determine_risk_level(health_score, position)
        gas_cost_impact = self.calculate_gas_cost_impact(position)

        return PositionAnalysis(
            position,
            health_score=health_score,
            risk_level=risk_level,
            yield_efficiency=self.calculate_yield_efficiency(position),
            compounding_frequency=self.determine_compounding_frequency(position),
            liquidation_distance=self.calculate_liquidation_distance(position),
            impermanent_loss_risk=self.calculate_impermanent_loss_risk(position),
            smart_contract_risk=self.assess_smart_contract_risk(position),
            estimated_daily_earnings=position.value * position.apy / 100 / 365,
            gas_cost_impact=gas_cost_impact,
            recommendations=self.generate_recommendations(position, health_score),
            warnings=self.generate_warnings(position, risk_level, gas_cost_impact)
        )

    def calculate_health_score(self, position: Position) -> float:
        t = self.thresholds
        score = 100

        if position.apy < t.health_very_low_apy_percent:
            score -= t.health_very_low_apy_penalty
        elif position.apy < t.health_low_apy_percent:
            score -= t.health_low_apy_penalty
        elif position.apy > t.health_high_apy_percent:
            score += t.health_high_apy_bonus

        if position.protocol not in t.mature_protocols:
            score -= t.health_immature_protocol_penalty

        if position.value < t.health_tiny_value_usd:
            score -= t.health_tiny_value_penalty
        elif position.value < t.health_small_value_usd:
            score -= t.health_small_value_penalty

        if position.is_debt:
            score -= t.health_debt_penalty

        return float(max(0, min(100, score)))

    def determine_risk_level(self, health_score: float, position: Position) -> str:
        t = self.thresholds
        if position.is_debt and health_score < t.critical_debt_health_score:
            return 'critical'
        if health_score < t.high_risk_health_score:
            return 'high'
        if health_score < t.medium_risk_health_score:
            return 'medium'
        return 'low'

    def calculate_yield_efficiency(self, position: Position) -> float:
        for floor, efficiency in self.thresholds.yield_efficiency_tiers:
            if position.apy > floor:
                return efficiency
        return float(self.thresholds.min_yield_efficiency)

    def assess_smart_contract_risk(self, position: Position) -> float:
        return float(self.thresholds.protocol_risk_scores.get(position.protocol,
                                                              self.thresholds.default_protocol_risk))

    def calculate_gas_cost_impact(self, position: Position) -> float:
        """Assumed transaction cost as a percentage of position value"""
        if position.value <= 0:
            return 100.0
        return self.thresholds.assumed_gas_cost_usd / position.value * 100

    def determine_compounding_frequency(self, position: Position) -> str:
        if position.metadata.auto_compounding:
            return 'auto'
        if position.protocol in self.thresholds.real_time_compounding_protocols:
            return 'real-time'
        if position.claimable > 0:
            return 'manual'
        return 'daily'

    @staticmethod
    def calculate_liquidation_distance(position: Position) -> Optional[float]:
        """Percent the health factor can drop before liquidation, when the source reports one"""
        if not position.is_debt:
            return None
        health_factor = position.metadata.payload.get('health_factor')
        if health_factor is None:
            return None
        health_factor = float(health_factor)
        if health_factor <= 0:
            return 0.0
        return max(0.0, min(100.0, (health_factor - 1) / health_factor * 100))

    def calculate_impermanent_loss_risk(self, position: Position) -> Optional[float]:
        if position.kind != PositionKind.LIQUIDITY:
            return None

        t = self.thresholds
        symbols = {token.symbol.upper() for token in position.tokens}
        if symbols and symbols <= STABLECOINS:
            risk = float(t.stable_pair_il_risk)
        else:
            risk = float(t.volatile_pair_il_risk)

        if position.metadata.payload.get('in_range') is False:
            risk += t.out_of_range_il_penalty
        return risk

    def generate_recommendations(self, position: Position, health_score: float) -> List[str]:
        t = self.thresholds
        recommendations = []
        if position.value < t.consolidate_below_value_usd:
            recommendations.append('Consider consolidating small positions to reduce gas cost impact')
        if position.apy < t.research_below_apy_percent:
            recommendations.append('Research higher-yield alternatives for better returns')
        if position.claimable > t.claimable_threshold_usd:
            recommendations.append('Claim pending rewards and compound for better returns')
        if position.kind == PositionKind.LIQUIDITY:
            recommendations.append('Monitor impermanent loss and consider single-sided alternatives if correlation is low')
        if health_score < t.migrate_below_health_score:
            recommendations.append('Consider reducing exposure or migrating to more mature protocols')
        return recommendations

    def generate_warnings(self, position: Position, risk_level: str, gas_cost_impact: float) -> List[str]:
        warnings = []
        if risk_level == 'critical':
            warnings.append('CRITICAL: This position requires immediate attention')
        if position.is_debt:
            warnings.append('Borrowing position - monitor liquidation risk closely')
        if position.protocol in self.thresholds.manual_protocols:
            warnings.append('Manual position - ensure accuracy of entered data')
        if gas_cost_impact > self.thresholds.gas_warning_percent:
            warnings.append(f"High gas cost impact ({gas_cost_impact:.1f}% of position value)")
        return warnings
