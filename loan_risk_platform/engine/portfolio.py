"""
Portfolio Credit Simulation
===========================

Joint simulation of a portfolio of borrowers that share systemic risk.

On every path all entities see the same realisation of the correlated
sector and collateral factors; their residual revenue, cost and collateral
draws are independent. Per-path outcomes are folded into:

- Marginal statistics per entity (a full :class:`SimulationResult` each)
- Portfolio default rate: share of paths whose exposure-weighted loss
  rate exceeds a threshold
- Joint default rate: share of paths with two or more defaults
- Loss distribution: expected loss, percentiles, VaR and expected shortfall
- Pairwise default correlation between entities
- Sector and property-type concentration and diversification benefit

Author: Loan Risk Platform Development Team
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from ..config import Settings, get_settings
from .duration import DurationAnalyzer, DurationReport
from .market_data import MarketData
from .monte_carlo import (
    PERCENTILES,
    MonteCarloParameters,
    SimulationResult,
    active_loans,
    aggregate_entity_paths,
    nominal_exposure,
    simulate_paths,
)
from .projection import (
    EntityFinancialProjector,
    EntityProfile,
    ModelParameters,
    SimulationPath,
    correlation_for,
)
from .scenarios import CorrelatedScenarioGenerator
from .solvency import SolvencyEvaluator, SolvencyThresholds

logger = logging.getLogger("LoanRisk.Portfolio")

UNCLASSIFIED = "Unclassified"


@dataclass(frozen=True)
class PortfolioPathSummary:
    """Outcome of one portfolio path."""

    path_index: int
    total_loss: float
    loss_rate: float
    defaulted_entities: Tuple[str, ...]


@dataclass
class PortfolioSimulationResult:
    """
    Aggregated outcome of a portfolio run.

    Attributes
    ----------
    n_paths, n_years : int
        Simulation size.
    entity_ids : List[str]
        Entities in input order.
    entity_results : Dict[str, SimulationResult]
        Marginal statistics per entity.
    total_exposure : float
        Lender nominal exposure over all entities.
    portfolio_default_rate : float
        Share of paths with loss rate above ``loss_threshold``.
    loss_threshold : float
        Loss-rate threshold used for the portfolio default rate.
    joint_default_rate : float
        Share of paths with at least two defaulting entities.
    expected_defaults : float
        Mean number of defaulting entities per path.
    path_losses : np.ndarray
        Total lender loss per path.
    expected_loss, expected_loss_rate : float
        Mean loss and mean loss over total exposure.
    loss_percentiles : Dict[int, float]
        Percentiles of the path loss.
    var_95, var_99, expected_shortfall_95, expected_shortfall_99 : float
        Tail measures of the path loss.
    default_correlation : pd.DataFrame
        Pairwise correlation of entity default indicators.
    sector_concentration, property_type_concentration : Dict[str, float]
        Exposure shares.
    sector_hhi : float
        Herfindahl index of the sector concentration.
    diversification_benefit : float
        ``1 - std(portfolio loss) / sum(std(entity loss))``.
    yearly_statistics : pd.DataFrame
        Per-year default and loss figures.
    sample_paths : Dict[str, PortfolioPathSummary]
        ``worst``, ``median`` and ``best`` paths by total loss.
    correlation_repaired : bool
        The factor correlation matrix needed an eigenvalue repair.
    degraded_inputs : List[str]
        Inputs replaced by defaults.
    duration : DurationReport, optional
        Duration analysis of the running loans of all entities.
    """

    n_paths: int
    n_years: int
    entity_ids: List[str]
    entity_results: Dict[str, SimulationResult]
    total_exposure: float
    portfolio_default_rate: float
    loss_threshold: float
    joint_default_rate: float
    expected_defaults: float
    path_losses: np.ndarray
    expected_loss: float
    expected_loss_rate: float
    loss_percentiles: Dict[int, float]
    var_95: float
    var_99: float
    expected_shortfall_95: float
    expected_shortfall_99: float
    default_correlation: pd.DataFrame
    sector_concentration: Dict[str, float]
    property_type_concentration: Dict[str, float]
    sector_hhi: float
    diversification_benefit: float
    yearly_statistics: pd.DataFrame
    sample_paths: Dict[str, PortfolioPathSummary] = field(default_factory=dict)
    correlation_repaired: bool = False
    degraded_inputs: List[str] = field(default_factory=list)
    duration: Optional[DurationReport] = None

    def entity_table(self) -> pd.DataFrame:
        """One row of marginal statistics per entity."""
        rows = []
        for entity_id in self.entity_ids:
            r = self.entity_results[entity_id]
            rows.append(
                {
                    "entity_id": entity_id,
                    "probability_of_default": r.probability_of_default,
                    "expected_loss": r.expected_loss,
                    "average_lgd": r.average_lgd,
                    "expected_loss_rate": r.expected_loss_rate,
                    "equity_p50": r.equity_percentiles[50],
                }
            )
        return pd.DataFrame(rows).set_index("entity_id")

    def summary(self) -> Dict:
        """Return summary as dictionary."""
        return {
            "n_paths": self.n_paths,
            "n_years": self.n_years,
            "n_entities": len(self.entity_ids),
            "total_exposure": self.total_exposure,
            "portfolio_default_rate": self.portfolio_default_rate,
            "joint_default_rate": self.joint_default_rate,
            "expected_defaults": self.expected_defaults,
            "expected_loss": self.expected_loss,
            "expected_loss_rate": self.expected_loss_rate,
            "var_95": self.var_95,
            "var_99": self.var_99,
            "expected_shortfall_95": self.expected_shortfall_95,
            "expected_shortfall_99": self.expected_shortfall_99,
            "sector_concentration": self.sector_concentration,
            "property_type_concentration": self.property_type_concentration,
            "diversification_benefit": self.diversification_benefit,
            "entity_pd": {
                e: self.entity_results[e].probability_of_default for e in self.entity_ids
            },
            "correlation_repaired": self.correlation_repaired,
            "degraded_inputs": list(self.degraded_inputs),
        }


def loss_distribution(losses: np.ndarray) -> Dict[str, float]:
    """Expected loss, VaR and expected shortfall of a loss sample."""
    if losses.size == 0:
        return {k: 0.0 for k in ("expected_loss", "std_loss", "var_95", "var_99", "es_95", "es_99")}
    var_95 = float(np.percentile(losses, 95))
    var_99 = float(np.percentile(losses, 99))
    return {
        "expected_loss": float(losses.mean()),
        "std_loss": float(losses.std()),
        "var_95": var_95,
        "var_99": var_99,
        "es_95": float(losses[losses >= var_95].mean()),
        "es_99": float(losses[losses >= var_99].mean()),
    }


def default_correlation_matrix(indicators: np.ndarray, entity_ids: Sequence[str]) -> pd.DataFrame:
    """
    Pairwise correlation of default indicators.

    Entities that never (or always) default have no defined correlation;
    their off-diagonal entries are reported as zero.
    """
    n = indicators.shape[1]
    if n == 0:
        return pd.DataFrame()
    x = indicators.astype(float)
    std = x.std(axis=0)
    centered = x - x.mean(axis=0)
    cov = centered.T @ centered / max(len(x), 1)
    denom = np.outer(std, std)
    corr = np.divide(cov, denom, out=np.zeros_like(cov), where=denom > 0)
    np.fill_diagonal(corr, 1.0)
    return pd.DataFrame(corr, index=list(entity_ids), columns=list(entity_ids))


def concentration(entities: Sequence[EntityProfile]) -> Tuple[Dict[str, float], Dict[str, float]]:
    """
    Sector and property-type shares of the lender's exposure.

    Sector shares weight each entity's nominal exposure by its sector
    weights; property-type shares use collateral appraisal values.
    """
    sectors: Dict[str, float] = {}
    for entity in entities:
        exposure = nominal_exposure(entity)
        if exposure <= 0:
            continue
        if entity.exposure.is_empty:
            sectors[UNCLASSIFIED] = sectors.get(UNCLASSIFIED, 0.0) + exposure
            continue
        for sector in entity.exposure.sectors:
            sectors[sector.value] = sectors.get(sector.value, 0.0) + exposure * entity.exposure.weight(sector)

    property_types: Dict[str, float] = {}
    for entity in entities:
        for loan in entity.loans:
            if loan.is_external:
                continue
            for item in loan.collateral:
                key = item.property_type.value if item.property_type is not None else UNCLASSIFIED
                property_types[key] = property_types.get(key, 0.0) + item.appraisal_value

    def _shares(totals: Dict[str, float]) -> Dict[str, float]:
        grand = sum(totals.values())
        return {k: v / grand for k, v in totals.items()} if grand > 0 else {}

    return _shares(sectors), _shares(property_types)


class PortfolioAggregator:
    """
    Run and aggregate a correlated portfolio simulation.

    Parameters
    ----------
    mc_params : MonteCarloParameters, optional
        Path count, horizon, seed and parallelism.
    model_params : ModelParameters, optional
        Model calibration shared by all entities.
    market_data : MarketData, optional
        Sector and collateral reference data.
    thresholds : SolvencyThresholds, optional
        Default test configuration.
    loss_threshold : float, optional
        Loss rate above which a path counts as a portfolio default.
    settings : Settings, optional
        Source of defaults.

    Example
    -------
    >>> aggregator = PortfolioAggregator(MonteCarloParameters(n_paths=2000))
    >>> result = aggregator.run([entity_a, entity_b])
    >>> print(f"Joint default rate: {result.joint_default_rate:.2%}")
    """

    def __init__(
        self,
        mc_params: Optional[MonteCarloParameters] = None,
        model_params: Optional[ModelParameters] = None,
        market_data: Optional[MarketData] = None,
        thresholds: Optional[SolvencyThresholds] = None,
        loss_threshold: Optional[float] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        cfg = settings or get_settings()
        self.settings = cfg
        self.mc_params = (mc_params or MonteCarloParameters.from_settings(cfg)).validate()
        model_params = model_params or ModelParameters.from_settings(cfg, n_years=self.mc_params.n_years)
        if model_params.n_years != self.mc_params.n_years:
            model_params = replace(model_params, n_years=self.mc_params.n_years)
        self.model_params = model_params
        self.market_data = market_data or MarketData(settings=cfg)
        self.thresholds = thresholds or SolvencyThresholds.from_settings(cfg)
        self.loss_threshold = cfg.portfolio_loss_threshold if loss_threshold is None else loss_threshold

    def run(self, entities: Sequence[EntityProfile], include_duration: bool = False) -> PortfolioSimulationResult:
        """
        Simulate all entities on shared systemic paths.

        Raises
        ------
        ValueError
            If the portfolio is empty or entity ids repeat.
        InvalidLoanTerms
            If any loan's terms are invalid.
        InvalidCorrelationInput
            If the factor correlation matrix is unusable; no path is run.
        """
        entities = list(entities)
        if not entities:
            raise ValueError("Portfolio contains no entities")
        entity_ids = [e.entity_id for e in entities]
        if len(set(entity_ids)) != len(entity_ids):
            raise ValueError("Entity ids must be unique within a portfolio")
        for entity in entities:
            for loan in entity.loans:
                loan.terms.validate()

        mc = self.mc_params
        generator = CorrelatedScenarioGenerator(
            correlation_for(entities, self.market_data),
            seed=mc.seed,
            eigenvalue_floor=self.settings.psd_eigenvalue_floor,
        )
        evaluator = SolvencyEvaluator(self.thresholds)
        projectors = [
            EntityFinancialProjector(e, self.model_params, self.market_data, generator.correlation, evaluator)
            for e in entities
        ]
        degraded = [note for p in projectors for note in p.degraded_inputs]
        for note in degraded:
            logger.warning("Degraded input: %s", note)

        logger.info(
            "Running portfolio of %d entities: %d paths over %d years (seed=%d, %d factors)",
            len(entities),
            mc.n_paths,
            mc.n_years,
            mc.seed,
            generator.n_factors,
        )
        paths = simulate_paths(generator, projectors, mc)

        entity_results = {
            entity.entity_id: aggregate_entity_paths(
                entity,
                [row[i] for row in paths],
                mc,
                correlation_repaired=generator.repaired,
                degraded_inputs=projectors[i].degraded_inputs,
            )
            for i, entity in enumerate(entities)
        }

        result = self._aggregate(entities, paths, entity_results, generator.repaired, degraded)
        if include_duration:
            loans = [loan for e in entities for loan in active_loans(e, lender_only=True)]
            result.duration = DurationAnalyzer().analyze(loans)

        logger.info(
            "Portfolio: default rate %.2f%%, joint default rate %.2f%%, EL %.2f, VaR99 %.2f",
            100 * result.portfolio_default_rate,
            100 * result.joint_default_rate,
            result.expected_loss,
            result.var_99,
        )
        return result

    def _aggregate(
        self,
        entities: Sequence[EntityProfile],
        paths: List[List[SimulationPath]],
        entity_results: Dict[str, SimulationResult],
        repaired: bool,
        degraded: List[str],
    ) -> PortfolioSimulationResult:
        mc = self.mc_params
        entity_ids = [e.entity_id for e in entities]
        n_paths = len(paths)

        # (n_paths, n_entities)
        losses = np.array([[p.loss for p in row] for row in paths])
        default_years = np.array([[p.default_year or 0 for p in row] for row in paths])
        defaulted = default_years > 0

        exposures = np.array([nominal_exposure(e) for e in entities])
        total_exposure = float(exposures.sum())
        path_losses = losses.sum(axis=1)
        loss_rates = path_losses / total_exposure if total_exposure > 0 else np.zeros(n_paths)
        n_defaults = defaulted.sum(axis=1)

        dist = loss_distribution(path_losses)
        entity_std = losses.std(axis=0).sum()
        diversification = 1.0 - dist["std_loss"] / entity_std if entity_std > 0 else 0.0

        yearly_rows = []
        for year in range(1, mc.n_years + 1):
            by_year = defaulted & (default_years <= year)
            count = by_year.sum(axis=1)
            yearly_rows.append(
                {
                    "year": year,
                    "expected_defaults": float(count.mean()),
                    "prob_any_default": float((count >= 1).mean()),
                    "prob_joint_default": float((count >= 2).mean()),
                    "expected_cumulative_loss": float((losses * by_year).sum(axis=1).mean()),
                }
            )
        yearly = pd.DataFrame(yearly_rows).set_index("year")

        order = np.argsort(path_losses, kind="stable")

        def _path_summary(i: int) -> PortfolioPathSummary:
            return PortfolioPathSummary(
                path_index=int(i),
                total_loss=float(path_losses[i]),
                loss_rate=float(loss_rates[i]),
                defaulted_entities=tuple(e for e, d in zip(entity_ids, defaulted[i]) if d),
            )

        sectors, property_types = concentration(entities)

        return PortfolioSimulationResult(
            n_paths=n_paths,
            n_years=mc.n_years,
            entity_ids=entity_ids,
            entity_results=entity_results,
            total_exposure=total_exposure,
            portfolio_default_rate=float((loss_rates > self.loss_threshold).mean()),
            loss_threshold=self.loss_threshold,
            joint_default_rate=float((n_defaults >= 2).mean()),
            expected_defaults=float(n_defaults.mean()),
            path_losses=path_losses,
            expected_loss=dist["expected_loss"],
            expected_loss_rate=dist["expected_loss"] / total_exposure if total_exposure > 0 else 0.0,
            loss_percentiles={q: float(np.percentile(path_losses, q)) for q in PERCENTILES},
            var_95=dist["var_95"],
            var_99=dist["var_99"],
            expected_shortfall_95=dist["es_95"],
            expected_shortfall_99=dist["es_99"],
            default_correlation=default_correlation_matrix(defaulted, entity_ids),
            sector_concentration=sectors,
            property_type_concentration=property_types,
            sector_hhi=float(sum(s ** 2 for s in sectors.values())),
            diversification_benefit=float(diversification),
            yearly_statistics=yearly,
            sample_paths={
                "worst": _path_summary(order[-1]),
                "median": _path_summary(order[len(order) // 2]),
                "best": _path_summary(order[0]),
            }
            if mc.sample_paths
            else {},
            correlation_repaired=repaired,
            degraded_inputs=degraded,
        )


def run_portfolio_simulation(
    entities: Sequence[EntityProfile],
    mc_params: Optional[MonteCarloParameters] = None,
    model_params: Optional[ModelParameters] = None,
    market_data: Optional[MarketData] = None,
    thresholds: Optional[SolvencyThresholds] = None,
    loss_threshold: Optional[float] = None,
    include_duration: bool = False,
    settings: Optional[Settings] = None,
) -> PortfolioSimulationResult:
    """Convenience wrapper around :class:`PortfolioAggregator`."""
    aggregator = PortfolioAggregator(
        mc_params=mc_params,
        model_params=model_params,
        market_data=market_data,
        thresholds=thresholds,
        loss_threshold=loss_threshold,
        settings=settings,
    )
    return aggregator.run(entities, include_duration=include_duration)
