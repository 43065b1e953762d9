"""
Yield Optimizer
Turns the aggregated position list into ranked yield opportunities:
compounding pending rewards, migrating to a better-paying protocol,
rebalancing weak liquidity positions, diversifying and moderate leverage.
Opportunities are ranked by confidence-weighted gain and bucketed into
high-impact picks, quick wins and immediate/short/long-term plans.
"""

import logging
from typing import Dict, Any, List, Optional

from position_tracker.core.models import Position, PositionKind
from position_tracker.analytics.portfolio_analytics import PortfolioAnalytics

logger = logging.getLogger(__name__)

DEFAULT_MIGRATION_ALTERNATIVES = [
    {'protocol': 'moonwell', 'apy_multiplier': 1.2, 'il_risk': 15, 'liquidation_risk': 10, 'smart_contract_risk': 20},
    {'protocol': 'compound-v3', 'apy_multiplier': 1.15, 'il_risk': 0, 'liquidation_risk': 15, 'smart_contract_risk': 15}
]


class OptimizationStep:
    """One action of an opportunity with its estimated gas cost in USD"""

    def __init__(self, action: str, description: str, gas_estimate: float):
        self.action = action
        self.description = description
        self.gas_estimate = gas_estimate

    def to_dict(self) -> Dict[str, Any]:
        return {'action': self.action, 'description': self.description, 'gas_estimate': self.gas_estimate}


class YieldOpportunity:
    """A ranked, actionable way to improve yield"""

    def __init__(self,
                 opportunity_id: str,
                 opportunity_type: str,
                 title: str,
                 description: str,
                 recommended_action: str,
                 gain_amount: float,
                 gain_percent: float,
                 timeframe: str,
                 risk: str,
                 difficulty: str,
                 confidence: float,
                 protocol: str,
                 category: str,
                 steps: List[OptimizationStep],
                 current_apy: float,
                 target_apy: float,
                 impermanent_loss_risk: float = 0.0,
                 liquidation_risk: float = 0.0,
                 smart_contract_risk: float = 0.0,
                 position_id: Optional[str] = None,
                 requirements: Optional[List[str]] = None):
        self.id = opportunity_id
        self.type = opportunity_type
        self.title = title
        self.description = description
        self.recommended_action = recommended_action
        self.gain_amount = gain_amount
        self.gain_percent = gain_percent
        self.timeframe = timeframe
        self.risk = risk
        self.difficulty = difficulty
        self.confidence = confidence
        self.protocol = protocol
        self.category = category
        self.steps = steps
        self.current_apy = current_apy
        self.target_apy = target_apy
        self.impermanent_loss_risk = impermanent_loss_risk
        self.liquidation_risk = liquidation_risk
        self.smart_contract_risk = smart_contract_risk
        self.position_id = position_id
        self.requirements = requirements or []

    @property
    def gas_estimate(self) -> float:
        return sum(step.gas_estimate for step in self.steps)

    @property
    def impact(self) -> float:
        """Gain weighted by confidence, the ranking key"""
        return self.gain_amount * self.confidence / 100

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'type': self.type,
            'title': self.title,
            'description': self.description,
            'recommended_action': self.recommended_action,
            'potential_gain': {
                'amount': self.gain_amount,
                'percentage': self.gain_percent,
                'timeframe': self.timeframe
            },
            'risk': self.risk,
            'difficulty': self.difficulty,
            'gas_estimate': self.gas_estimate,
            'confidence': self.confidence,
            'protocol': self.protocol,
            'category': self.category,
            'position_id': self.position_id,
            'requirements': self.requirements,
            'steps': [step.to_dict() for step in self.steps],
            'metrics': {
                'current_apy': self.current_apy,
                'target_apy': self.target_apy,
                'impermanent_loss_risk': self.impermanent_loss_risk,
                'liquidation_risk': self.liquidation_risk,
                'smart_contract_risk': self.smart_contract_risk
            }
        }


class PortfolioRiskAssessment:
    """Coarse portfolio risk used alongside the opportunities"""

    def __init__(self,
                 portfolio_risk: str,
                 diversification_needed: bool,
                 leverage_exposure: float,
                 concentration_risk: float):
        self.portfolio_risk = portfolio_risk
        self.diversification_needed = diversification_needed
        self.leverage_exposure = leverage_exposure
        self.concentration_risk = concentration_risk

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


class OptimizerAnalysis:
    """Result of YieldOptimizer.analyze_portfolio()"""

    def __init__(self,
                 opportunities: List[YieldOpportunity],
                 high_impact: List[YieldOpportunity],
                 quick_wins: List[YieldOpportunity],
                 risk_assessment: PortfolioRiskAssessment,
                 immediate: List[YieldOpportunity],
                 short_term: List[YieldOpportunity],
                 long_term: List[YieldOpportunity]):
        self.opportunities = opportunities
        self.high_impact = high_impact
        self.quick_wins = quick_wins
        self.risk_assessment = risk_assessment
        self.immediate = immediate
        self.short_term = short_term
        self.long_term = long_term

    @property
    def total_potential_gain(self) -> float:
        return sum(o.gain_amount for o in self.opportunities)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total_potential_gain': self.total_potential_gain,
            'opportunities': [o.to_dict() for o in self.opportunities],
            'high_impact_opportunities': [o.to_dict() for o in self.high_impact],
            'quick_wins': [o.to_dict() for o in self.quick_wins],
            'risk_assessment': self.risk_assessment.to_dict(),
            'recommendations': {
                'immediate': [o.to_dict() for o in self.immediate],
                'short_term': [o.to_dict() for o in self.short_term],
                'long_term': [o.to_dict() for o in self.long_term]
            }
        }


class OptimizerSettings:
    """Trigger thresholds, gain estimates and confidences of the optimizer"""

    def __init__(self,
                 compound_min_claimable_usd: float = 10,
                 compound_gain_fraction: float = 0.1,
                 compound_confidence: float = 85,
                 migration_alternatives: Optional[List[Dict[str, Any]]] = None,
                 migration_min_improvement: float = 1.1,
                 migration_confidence: float = 70,
                 rebalance_below_health_score: float = 70,
                 rebalance_gain_fraction: float = 0.05,
                 rebalance_confidence: float = 75,
                 diversify_below_protocols: int = 3,
                 diversify_min_value_usd: float = 1000,
                 diversify_gain_fraction: float = 0.02,
                 diversify_confidence: float = 80,
                 leverage_below_apy_percent: float = 8,
                 leverage_min_value_usd: float = 5000,
                 leverage_gain_fraction: float = 0.08,
                 leverage_apy_multiplier: float = 1.8,
                 leverage_confidence: float = 60,
                 high_impact_min_gain_usd: float = 100,
                 high_impact_min_confidence: float = 70,
                 max_high_impact: int = 5,
                 quick_win_max_gas_usd: float = 50,
                 max_quick_wins: int = 3,
                 max_immediate: int = 3,
                 max_short_term: int = 3,
                 max_long_term: int = 2,
                 high_concentration_percent: float = 50,
                 medium_concentration_percent: float = 30,
                 high_leverage_percent: float = 60,
                 medium_leverage_percent: float = 30):
        self.compound_min_claimable_usd = compound_min_claimable_usd
        self.compound_gain_fraction = compound_gain_fraction
        self.compound_confidence = compound_confidence
        self.migration_alternatives = [dict(a) for a in (DEFAULT_MIGRATION_ALTERNATIVES
                                                         if migration_alternatives is None
                                                         else migration_alternatives)]
        self.migration_min_improvement = migration_min_improvement
        self.migration_confidence = migration_confidence
        self.rebalance_below_health_score = rebalance_below_health_score
        self.rebalance_gain_fraction = rebalance_gain_fraction
        self.rebalance_confidence = rebalance_confidence
        self.diversify_below_protocols = diversify_below_protocols
        self.diversify_min_value_usd = diversify_min_value_usd
        self.diversify_gain_fraction = diversify_gain_fraction
        self.diversify_confidence = diversify_confidence
        self.leverage_below_apy_percent = leverage_below_apy_percent
        self.leverage_min_value_usd = leverage_min_value_usd
        self.leverage_gain_fraction = leverage_gain_fraction
        self.leverage_apy_multiplier = leverage_apy_multiplier
        self.leverage_confidence = leverage_confidence
        self.high_impact_min_gain_usd = high_impact_min_gain_usd
        self.high_impact_min_confidence = high_impact_min_confidence
        self.max_high_impact = max_high_impact
        self.quick_win_max_gas_usd = quick_win_max_gas_usd
        self.max_quick_wins = max_quick_wins
        self.max_immediate = max_immediate
        self.max_short_term = max_short_term
        self.max_long_term = max_long_term
        self.high_concentration_percent = high_concentration_percent
        self.medium_concentration_percent = medium_concentration_percent
        self.high_leverage_percent = high_leverage_percent
        self.medium_leverage_percent = medium_leverage_percent

    @classmethod
    def from_config(cls, config_manager) -> 'OptimizerSettings':
        settings = dict(config_manager.get('optimizer', {}) or {})
        known = cls().__dict__.keys()
        for key in [key for key in settings if key not in known]:
            logger.warning(f"Ignoring unknown optimizer setting '{key}'")
            settings.pop(key)
        return cls(**settings)


class YieldOptimizer:
    """
    YieldOptimizer finds:
    - per-position opportunities (compound, migrate, rebalance)
    - portfolio-wide opportunities (diversify, leverage)
    and ranks them by confidence-weighted gain.
    """

    def __init__(self,
                 analytics: Optional[PortfolioAnalytics] = None,
                 settings: Optional[OptimizerSettings] = None):
        """
        Initialize the optimizer

        Args:
            analytics (PortfolioAnalytics, optional): Supplies position health and weighted APY
            settings (OptimizerSettings, optional): Settings, defaults when omitted
        """
        self.analytics = analytics or PortfolioAnalytics()
        self.settings = settings or OptimizerSettings()

    @classmethod
    def from_config(cls, config_manager, analytics: Optional[PortfolioAnalytics] = None) -> 'YieldOptimizer':
        return cls(analytics or PortfolioAnalytics.from_config(config_manager),
                   OptimizerSettings.from_config(config_manager))

    def analyze_portfolio(self, positions: List[Position]) -> OptimizerAnalysis:
        """
        Find and rank every opportunity in a portfolio

        Args:
            positions (List[Position]): Aggregated positions

        Returns:
            OptimizerAnalysis: Ranked opportunities, picks and risk assessment
        """
        s = self.settings
        opportunities = []
        for position in positions:
            opportunities.extend(self.analyze_position(position))
        opportunities.extend(self.analyze_portfolio_strategy(positions))

        # Stable sort keeps discovery order on equal impact
        ranked = sorted(opportunities, key=lambda o: o.impact, reverse=True)

        high_impact = [o for o in ranked
                       if o.gain_amount > s.high_impact_min_gain_usd
                       and o.confidence > s.high_impact_min_confidence][:s.max_high_impact]
        quick_wins = [o for o in ranked
                      if o.difficulty == 'easy' and o.gas_estimate < s.quick_win_max_gas_usd][:s.max_quick_wins]

        analysis = OptimizerAnalysis(
            opportunities=ranked,
            high_impact=high_impact,
            quick_wins=quick_wins,
            risk_assessment=self.assess_portfolio_risk(positions),
            immediate=[o for o in ranked if o.difficulty == 'easy'][:s.max_immediate],
            short_term=[o for o in ranked if o.difficulty == 'medium'][:s.max_short_term],
            long_term=[o for o in ranked if o.difficulty == 'hard'][:s.max_long_term]
        )

        logger.debug(f"Found {len(ranked)} yield opportunities worth ${analysis.total_potential_gain:.2f}")
        return analysis

    def analyze_position(self, position: Position) -> List[YieldOpportunity]:
        s = self.settings
        opportunities = []

        if position.claimable > s.compound_min_claimable_usd:
            rewards = f"{position.claimable:.2f} {position.tokens[0].symbol}" if position.tokens \
                else f"{position.claimable:.2f}"
            opportunities.append(YieldOpportunity(
                f"compound-{position.id}", 'compound',
                f"Compound {position.protocol} Rewards",
                f"Auto-compound {rewards} rewards to increase yield",
                'Claim and reinvest rewards',
                gain_amount=position.claimable * s.compound_gain_fraction,
                gain_percent=s.compound_gain_fraction * 100,
                timeframe='1 month',
                risk='low',
                difficulty='easy',
                confidence=s.compound_confidence,
                protocol=position.protocol,
                category='Compounding',
                steps=[
                    OptimizationStep('Claim rewards', 'Harvest pending rewards', 15),
                    OptimizationStep('Reinvest', 'Add rewards back to position', 10)
                ],
                current_apy=position.apy,
                target_apy=position.apy * (1 + s.compound_gain_fraction),
                smart_contract_risk=20,
                position_id=position.id
            ))

        target = self.find_better_yield_protocol(position)
        if target is not None:
            target_apy = position.apy * target['apy_multiplier']
            opportunities.append(YieldOpportunity(
                f"migrate-{position.id}", 'migrate',
                f"Migrate to {target['protocol']}",
                f"Move funds from {position.protocol} ({position.apy:.1f}% APY) "
                f"to {target['protocol']} ({target_apy:.1f}% APY)",
                f"Withdraw from {position.protocol} and deposit to {target['protocol']}",
                gain_amount=position.value * (target_apy - position.apy) / 100,
                gain_percent=(target_apy - position.apy) / position.apy * 100,
                timeframe='1 year',
                risk='medium',
                difficulty='medium',
                confidence=s.migration_confidence,
                protocol=target['protocol'],
                category='Migration',
                steps=[
                    OptimizationStep('Withdraw', f"Remove liquidity from {position.protocol}", 35),
                    OptimizationStep('Deposit', f"Provide liquidity to {target['protocol']}", 40)
                ],
                current_apy=position.apy,
                target_apy=target_apy,
                impermanent_loss_risk=target.get('il_risk', 0),
                liquidation_risk=target.get('liquidation_risk', 0),
                smart_contract_risk=target.get('smart_contract_risk', 0),
                position_id=position.id,
                requirements=['Research new protocol thoroughly', 'Check audit status']
            ))

        if (position.kind == PositionKind.LIQUIDITY
                and self.analytics.calculate_health_score(position) < s.rebalance_below_health_score):
            opportunities.append(YieldOpportunity(
                f"rebalance-{position.id}", 'rebalance',
                f"Rebalance {position.protocol} LP Position",
                'Current position is out of optimal range. Rebalancing could improve yield efficiency.',
                'Adjust position ranges or token ratios',
                gain_amount=position.value * s.rebalance_gain_fraction,
                gain_percent=s.rebalance_gain_fraction * 100,
                timeframe='1 month',
                risk='low',
                difficulty='medium',
                confidence=s.rebalance_confidence,
                protocol=position.protocol,
                category='Rebalancing',
                steps=[
                    OptimizationStep('Analyze ranges', 'Check current vs optimal price ranges', 0),
                    OptimizationStep('Rebalance', 'Adjust LP position parameters', 50)
                ],
                current_apy=position.apy,
                target_apy=position.apy * (1 + s.rebalance_gain_fraction),
                impermanent_loss_risk=15,
                smart_contract_risk=10,
                position_id=position.id
            ))

        return opportunities

    def analyze_portfolio_strategy(self, positions: List[Position]) -> List[YieldOpportunity]:
        s = self.settings
        total_value = sum(p.value for p in positions)
        if total_value <= 0:
            return []

        opportunities = []
        average_apy = self.analytics.weighted_average_apy(positions)
        protocol_count = len({p.protocol for p in positions})

        if protocol_count < s.diversify_below_protocols and total_value > s.diversify_min_value_usd:
            opportunities.append(YieldOpportunity(
                'diversify-protocols', 'rebalance',
                'Diversify Across More Protocols',
                f"Portfolio is concentrated in {protocol_count} protocol(s). Spreading across more protocols "
                f"could reduce risk and improve yield stability.",
                'Allocate funds to 2-3 additional high-quality protocols',
                gain_amount=total_value * s.diversify_gain_fraction,
                gain_percent=s.diversify_gain_fraction * 100,
                timeframe='6 months',
                risk='low',
                difficulty='medium',
                confidence=s.diversify_confidence,
                protocol='Multiple',
                category='Diversification',
                steps=[
                    OptimizationStep('Research', 'Identify complementary protocols', 0),
                    OptimizationStep('Allocate', 'Gradually move funds to new protocols', 100)
                ],
                current_apy=average_apy,
                target_apy=average_apy * (1 + s.diversify_gain_fraction),
                impermanent_loss_risk=10,
                liquidation_risk=5,
                smart_contract_risk=15,
                requirements=['Research additional protocols', 'Maintain similar risk level']
            ))

        if average_apy < s.leverage_below_apy_percent and total_value > s.leverage_min_value_usd:
            opportunities.append(YieldOpportunity(
                'consider-leverage', 'leverage',
                'Consider Moderate Leverage',
                f"Portfolio is very conservative ({average_apy:.1f}% APY). Strategic use of 1.5-2x leverage "
                f"on blue-chip assets could boost returns.",
                'Use moderate leverage on ETH/USDC positions',
                gain_amount=total_value * s.leverage_gain_fraction,
                gain_percent=s.leverage_gain_fraction * 100,
                timeframe='1 year',
                risk='medium',
                difficulty='hard',
                confidence=s.leverage_confidence,
                protocol='Multiple',
                category='Leverage',
                steps=[
                    OptimizationStep('Education', 'Learn about leverage mechanics and risks', 0),
                    OptimizationStep('Test', 'Start with small leveraged position', 75),
                    OptimizationStep('Scale', 'Gradually increase if comfortable', 75)
                ],
                current_apy=average_apy,
                target_apy=average_apy * s.leverage_apy_multiplier,
                impermanent_loss_risk=20,
                liquidation_risk=40,
                smart_contract_risk=25,
                requirements=['Understand liquidation risks', 'Monitor positions actively', 'Start with small amounts']
            ))

        return opportunities

    def find_better_yield_protocol(self, position: Position) -> Optional[Dict[str, Any]]:
        """
        First configured alternative paying enough more than the position.
        Debt positions, positions earning nothing and alternatives on the
        position's own protocol are never proposed.
        """
        if position.is_debt or position.apy <= 0:
            return None

        for alternative in self.settings.migration_alternatives:
            if alternative['protocol'] == position.protocol:
                continue
            if alternative['apy_multiplier'] > self.settings.migration_min_improvement:
                return alternative
        return None

    def assess_portfolio_risk(self, positions: List[Position]) -> PortfolioRiskAssessment:
        """
        Assess concentration in the largest position and exposure to
        lending and borrowing

        Args:
            positions (List[Position]): Positions

        Returns:
            PortfolioRiskAssessment: Risk band plus the underlying percentages
        """
        s = self.settings
        protocol_count = len({p.protocol for p in positions})
        total_value = sum(p.value for p in positions)

        if total_value <= 0:
            return PortfolioRiskAssessment('low', protocol_count < s.diversify_below_protocols, 0.0, 0.0)

        concentration_risk = max(p.value for p in positions) / total_value * 100
        leveraged_value = sum(p.value for p in positions
                              if p.kind in (PositionKind.LENDING, PositionKind.BORROWING) or p.is_debt)
        leverage_exposure = leveraged_value / total_value * 100

        if concentration_risk > s.high_concentration_percent or leverage_exposure > s.high_leverage_percent:
            portfolio_risk = 'high'
        elif concentration_risk > s.medium_concentration_percent or leverage_exposure > s.medium_leverage_percent:
            portfolio_risk = 'medium'
        else:
            portfolio_risk = 'low'

        return PortfolioRiskAssessment(portfolio_risk, protocol_count < s.diversify_below_protocols,
                                       leverage_exposure, concentration_risk)

    def get_quick_recommendations(self, positions: List[Position]) -> List[YieldOpportunity]:
        return self.analyze_portfolio(positions).quick_wins

    def get_high_impact_opportunities(self, positions: List[Position]) -> List[YieldOpportunity]:
        return self.analyze_portfolio(positions).high_impact
