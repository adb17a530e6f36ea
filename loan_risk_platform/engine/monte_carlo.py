"""
Monte Carlo Credit Simulation
=============================

Simulation driver for single borrowers:

- Correlated sector and collateral scenarios per path
- Year-by-year financial projection and solvency tests per path
- Parallel path batches with per-path random streams
- Aggregation into default probability, loss and percentile statistics

Paths are split into contiguous batches. Each batch is run in-process or on
a :class:`~concurrent.futures.ProcessPoolExecutor`; batch results are
collected in path order and aggregated once all batches have returned.
Because every path draws from its own seeded stream, the result for a given
seed is identical for any batch size or worker count.

Author: Loan Risk Platform Development Team
"""

from __future__ import annotations

import logging
import multiprocessing
import time
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy.stats import norm

from ..config import Settings, get_settings
from .amortization import AmortizationScheduler
from .duration import ActiveLoan, DurationAnalyzer, DurationReport
from .market_data import MarketData
from .projection import (
    EntityFinancialProjector,
    EntityProfile,
    ModelParameters,
    SimulationPath,
    correlation_for,
)
from .scenarios import CorrelatedScenarioGenerator
from .solvency import SolvencyEvaluator, SolvencyThresholds

logger = logging.getLogger("LoanRisk.MonteCarlo")

PERCENTILES: Tuple[int, ...] = (5, 10, 50, 90, 95)
YEARLY_METRICS: Tuple[str, ...] = (
    "revenue",
    "ebitda",
    "interest",
    "net_income",
    "equity",
    "total_debt",
    "liquid_assets",
)


@dataclass
class MonteCarloParameters:
    """
    Parameters for Monte Carlo simulation.

    Attributes
    ----------
    n_paths : int
        Number of simulation paths
    n_years : int
        Number of simulated years
    seed : int
        Master seed for reproducibility
    parallel : bool
        Run path batches on worker processes
    n_workers : int
        Number of worker processes (if parallel=True)
    batch_size : int
        Paths per batch
    keep_paths : bool
        Keep every simulated path on the result
    sample_paths : bool
        Keep worst, median and best paths on the result
    """

    n_paths: int = 10_000
    n_years: int = 5
    seed: int = 42
    parallel: bool = False
    n_workers: int = 4
    batch_size: int = 500
    keep_paths: bool = False
    sample_paths: bool = True

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, **overrides) -> "MonteCarloParameters":
        cfg = settings or get_settings()
        values = dict(
            n_paths=cfg.mc_paths,
            n_years=cfg.mc_years,
            seed=cfg.mc_seed,
            parallel=cfg.mc_parallel,
            n_workers=cfg.mc_workers,
            batch_size=cfg.mc_batch_size,
            sample_paths=cfg.mc_sample_paths,
        )
        values.update(overrides)
        return cls(**values)

    def validate(self) -> "MonteCarloParameters":
        if self.n_paths <= 0:
            raise ValueError(f"n_paths must be positive, got {self.n_paths}")
        if self.n_years <= 0:
            raise ValueError(f"n_years must be positive, got {self.n_years}")
        if self.batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {self.batch_size}")
        return self

    def batches(self) -> List[Tuple[int, int]]:
        """Contiguous ``(start, stop)`` path ranges."""
        return [
            (start, min(start + self.batch_size, self.n_paths))
            for start in range(0, self.n_paths, self.batch_size)
        ]


# =============================================================================
# Path Execution
# =============================================================================


def _run_path_batch(
    job: Tuple[CorrelatedScenarioGenerator, Sequence[EntityFinancialProjector], int, int, int]
) -> List[List[SimulationPath]]:
    """
    Simulate paths ``start..stop`` for every projector.

    All projectors on a path share the systemic draw; each entity has its
    own idiosyncratic stream. Module-level so worker processes can unpickle
    it.
    """
    generator, projectors, start, stop, n_years = job
    results: List[List[SimulationPath]] = []
    for path_index in range(start, stop):
        factors = generator.draw_factor_shocks(generator.path_rng(path_index), n_years)
        row = []
        for entity_index, projector in enumerate(projectors):
            idio = generator.draw_idiosyncratic(path_index, entity_index, n_years)
            row.append(projector.project(path_index, factors, idio))
        results.append(row)
    return results


def simulate_paths(
    generator: CorrelatedScenarioGenerator,
    projectors: Sequence[EntityFinancialProjector],
    mc_params: MonteCarloParameters,
) -> List[List[SimulationPath]]:
    """
    Run all paths for a set of projectors.

    Returns
    -------
    list of list of SimulationPath
        Indexed ``[path][entity]``, in path order.
    """
    jobs = [
        (generator, list(projectors), start, stop, mc_params.n_years)
        for start, stop in mc_params.batches()
    ]
    n_workers = min(mc_params.n_workers, multiprocessing.cpu_count(), len(jobs))

    started = time.perf_counter()
    paths: List[List[SimulationPath]] = []
    if mc_params.parallel and n_workers > 1:
        with ProcessPoolExecutor(max_workers=n_workers) as executor:
            for batch in executor.map(_run_path_batch, jobs):
                paths.extend(batch)
    else:
        for job in jobs:
            paths.extend(_run_path_batch(job))
            logger.debug("Completed paths %d-%d", job[2], job[3] - 1)

    logger.info(
        "Simulated %d paths x %d entities in %.2fs (%s)",
        len(paths),
        len(projectors),
        time.perf_counter() - started,
        f"{n_workers} workers" if mc_params.parallel and n_workers > 1 else "serial",
    )
    return paths


# =============================================================================
# Results
# =============================================================================


@dataclass
class SimulationResult:
    """
    Aggregated outcome of one entity over all paths.

    Attributes
    ----------
    entity_id : str
        Entity simulated.
    n_paths, n_years : int
        Simulation size.
    probability_of_default : float
        Share of paths flagged insolvent by the horizon.
    pd_standard_error : float
        Binomial standard error of the default probability.
    pd_confidence_interval_95 : Tuple[float, float]
        Normal-approximation 95% interval, clipped to [0, 1].
    cumulative_pd : List[float]
        Share of paths defaulted by the end of each year.
    default_reasons : Dict[str, float]
        Share of paths defaulting for each reason.
    ending_equity : np.ndarray
        Equity at the horizon per path.
    equity_percentiles : Dict[int, float]
        Percentiles of ending equity.
    losses : np.ndarray
        Lender loss per path (zero where no default).
    loss_percentiles : Dict[int, float]
        Percentiles of the loss.
    expected_loss : float
        Mean loss over all paths (PD times average loss given default).
    average_lgd : float
        Mean loss-given-default rate over defaulted paths.
    expected_loss_rate : float
        Expected loss over the lender's nominal exposure.
    median_roi : float, optional
        Median total interest less expected loss, over nominal exposure.
    interest_before_simulation : float
        Interest already received on running lender loans before year 1.
    median_interest_during_simulation : float
        Median over paths of the lender interest received in the horizon.
    median_total_interest : float
        Interest before the simulation plus the median during it.
    median_lgd : float
        Median loss-given-default rate over defaulted paths.
    yearly_statistics : pd.DataFrame
        Per-year mean and percentile bands, indexed by year (0 = start).
    correlation_repaired : bool
        The factor correlation matrix needed an eigenvalue repair.
    degraded_inputs : List[str]
        Inputs replaced by defaults.
    sample_paths : Dict[str, SimulationPath]
        ``worst``, ``median`` and ``best`` paths.
    duration : DurationReport, optional
        Duration analysis of the entity's running loans.
    paths : List[SimulationPath], optional
        Every path, when requested.
    """

    entity_id: str
    n_paths: int
    n_years: int
    probability_of_default: float
    pd_standard_error: float
    pd_confidence_interval_95: Tuple[float, float]
    cumulative_pd: List[float]
    default_reasons: Dict[str, float]
    ending_equity: np.ndarray
    equity_percentiles: Dict[int, float]
    losses: np.ndarray
    loss_percentiles: Dict[int, float]
    expected_loss: float
    average_lgd: float
    expected_loss_rate: float
    median_roi: Optional[float]
    interest_before_simulation: float
    median_interest_during_simulation: float
    median_total_interest: float
    median_lgd: float
    yearly_statistics: pd.DataFrame
    correlation_repaired: bool = False
    degraded_inputs: List[str] = field(default_factory=list)
    sample_paths: Dict[str, SimulationPath] = field(default_factory=dict)
    duration: Optional[DurationReport] = None
    paths: Optional[List[SimulationPath]] = None

    @property
    def is_degraded(self) -> bool:
        return bool(self.degraded_inputs)

    def summary(self) -> Dict:
        """Return summary as dictionary."""
        return {
            "entity_id": self.entity_id,
            "n_paths": self.n_paths,
            "n_years": self.n_years,
            "probability_of_default": self.probability_of_default,
            "pd_standard_error": self.pd_standard_error,
            "pd_confidence_interval_95": list(self.pd_confidence_interval_95),
            "cumulative_pd": self.cumulative_pd,
            "default_reasons": self.default_reasons,
            "equity_percentiles": self.equity_percentiles,
            "loss_percentiles": self.loss_percentiles,
            "expected_loss": self.expected_loss,
            "average_lgd": self.average_lgd,
            "expected_loss_rate": self.expected_loss_rate,
            "median_roi": self.median_roi,
            "interest_before_simulation": self.interest_before_simulation,
            "median_interest_during_simulation": self.median_interest_during_simulation,
            "median_total_interest": self.median_total_interest,
            "median_lgd": self.median_lgd,
            "correlation_repaired": self.correlation_repaired,
            "degraded_inputs": list(self.degraded_inputs),
            "duration": self.duration.summary() if self.duration is not None else None,
        }


def pd_confidence(pd_hat: float, n_paths: int, level: float = 0.95) -> Tuple[float, Tuple[float, float]]:
    """Binomial standard error and normal-approximation interval."""
    se = float(np.sqrt(pd_hat * (1.0 - pd_hat) / n_paths)) if n_paths > 0 else 0.0
    z = float(norm.ppf(0.5 + level / 2.0))
    return se, (max(0.0, pd_hat - z * se), min(1.0, pd_hat + z * se))


def _percentiles(values: np.ndarray) -> Dict[int, float]:
    if values.size == 0:
        return {p: 0.0 for p in PERCENTILES}
    return {p: float(np.percentile(values, p)) for p in PERCENTILES}


def paths_to_frame(paths: Sequence[SimulationPath]) -> pd.DataFrame:
    """Long table with one row per path-year."""
    rows = []
    for path in paths:
        for y in path.years:
            active = path.default_year is None or y.year <= path.default_year
            rows.append(
                (
                    path.path_index,
                    y.year,
                    y.revenue,
                    y.ebitda,
                    y.interest,
                    y.net_income,
                    y.equity,
                    y.total_debt,
                    y.liquid_assets,
                    y.interest_coverage if y.interest > 0 else np.nan,
                    active and y.cannot_pay_interest,
                    active and y.cash_flow < 0,
                    path.default_year is not None and path.default_year <= y.year,
                )
            )
    return pd.DataFrame(
        rows,
        columns=[
            "path",
            "year",
            *YEARLY_METRICS,
            "interest_coverage",
            "cannot_pay_interest",
            "negative_cash_flow",
            "defaulted",
        ],
    )


def yearly_statistics(entity: EntityProfile, paths: Sequence[SimulationPath]) -> pd.DataFrame:
    """
    Per-year statistics table.

    Columns are ``<metric>_mean`` and ``<metric>_p<q>`` for each metric in
    :data:`YEARLY_METRICS`, plus ``interest_coverage_mean``,
    ``cumulative_pd``, ``prob_cannot_pay_interest`` and
    ``prob_negative_cash_flow``. Row 0 holds the starting snapshot, with
    interest expense, net income and coverage at zero.

    Interest coverage is averaged over the paths owing interest in the
    year; matured and defaulted years are left out.
    """
    frame = paths_to_frame(paths)
    grouped = frame.groupby("year")
    metrics = grouped[list(YEARLY_METRICS)]
    stats = metrics.mean().add_suffix("_mean")
    for q in PERCENTILES:
        stats = stats.join(metrics.quantile(q / 100.0).add_suffix(f"_p{q}"))
    stats["interest_coverage_mean"] = grouped["interest_coverage"].mean().fillna(0.0)
    stats["cumulative_pd"] = grouped["defaulted"].mean()
    stats["prob_cannot_pay_interest"] = grouped["cannot_pay_interest"].mean()
    stats["prob_negative_cash_flow"] = grouped["negative_cash_flow"].mean()

    snap = entity.snapshot
    start = {
        "revenue": snap.revenue,
        "ebitda": snap.ebitda,
        "interest": 0.0,
        "net_income": 0.0,
        "equity": snap.equity,
        "total_debt": snap.total_assets - snap.equity,
        "liquid_assets": snap.liquid_assets,
    }
    row0 = {f"{m}_mean": v for m, v in start.items()}
    for q in PERCENTILES:
        row0.update({f"{m}_p{q}": v for m, v in start.items()})
    row0.update(
        interest_coverage_mean=0.0,
        cumulative_pd=0.0,
        prob_cannot_pay_interest=0.0,
        prob_negative_cash_flow=0.0,
    )
    year0 = pd.DataFrame([row0], index=pd.Index([0], name="year"))
    return pd.concat([year0, stats[year0.columns]])


def select_sample_paths(paths: Sequence[SimulationPath]) -> Dict[str, SimulationPath]:
    """
    Worst, median and best paths.

    Worst is the largest loss, or the lowest ending equity when no path
    defaulted; median and best rank by ending equity.
    """
    if not paths:
        return {}
    equity = np.array([p.ending_equity for p in paths])
    losses = np.array([p.loss for p in paths])
    order = np.argsort(equity, kind="stable")
    worst = int(np.argmax(losses)) if losses.max() > 0 else int(order[0])
    return {
        "worst": paths[worst],
        "median": paths[int(order[len(order) // 2])],
        "best": paths[int(order[-1])],
    }


def nominal_exposure(entity: EntityProfile) -> float:
    """Lender's nominal exposure: basis of all non-external loans."""
    return float(sum(loan.terms.basis for loan in entity.loans if not loan.is_external))


def interest_before_simulation(
    entity: EntityProfile, scheduler: Optional[AmortizationScheduler] = None
) -> float:
    """
    Interest received on running lender loans before the simulation start.

    A loan with ``start_offset_months = -m`` has already paid its first
    ``m`` scheduled months, capped at the tenor. Loans starting at or after
    the simulation start contribute nothing.
    """
    scheduler = scheduler or AmortizationScheduler()
    total = 0.0
    for loan in entity.loans:
        if loan.is_external or loan.start_offset_months >= 0:
            continue
        months = min(-loan.start_offset_months, loan.terms.tenor_months)
        total += sum(e.interest for e in scheduler.generate(loan.terms)[:months])
    return float(total)


def aggregate_entity_paths(
    entity: EntityProfile,
    paths: Sequence[SimulationPath],
    mc_params: MonteCarloParameters,
    correlation_repaired: bool = False,
    degraded_inputs: Optional[List[str]] = None,
) -> SimulationResult:
    """
    Fold one entity's paths into a :class:`SimulationResult`.

    Parameters
    ----------
    entity : EntityProfile
        Entity the paths belong to.
    paths : sequence of SimulationPath
        Paths in path order.
    mc_params : MonteCarloParameters
        Run parameters.
    correlation_repaired : bool
        Whether the factor matrix was repaired.
    degraded_inputs : list of str, optional
        Degraded-input notes to carry over.
    """
    n_paths = len(paths)
    n_years = mc_params.n_years
    default_years = np.array([p.default_year or 0 for p in paths])
    defaulted = default_years > 0
    pd_hat = float(defaulted.mean()) if n_paths else 0.0
    se, ci = pd_confidence(pd_hat, n_paths)

    cumulative = [float(((default_years > 0) & (default_years <= y)).mean()) for y in range(1, n_years + 1)]
    reasons: Dict[str, float] = {}
    for p in paths:
        if p.default_reason is not None:
            reasons[p.default_reason.value] = reasons.get(p.default_reason.value, 0) + 1
    reasons = {k: v / n_paths for k, v in reasons.items()}

    ending_equity = np.array([p.ending_equity for p in paths])
    losses = np.array([p.loss for p in paths])
    lgds = np.array([p.lgd for p in paths if p.defaulted])
    expected_loss = float(losses.mean()) if n_paths else 0.0

    interest_before = interest_before_simulation(entity)
    median_during = float(np.median([p.lender_interest for p in paths])) if n_paths else 0.0
    median_total = interest_before + median_during

    nominal = nominal_exposure(entity)
    median_roi = (median_total - expected_loss) / nominal if nominal > 0 else None

    result = SimulationResult(
        entity_id=entity.entity_id,
        n_paths=n_paths,
        n_years=n_years,
        probability_of_default=pd_hat,
        pd_standard_error=se,
        pd_confidence_interval_95=ci,
        cumulative_pd=cumulative,
        default_reasons=reasons,
        ending_equity=ending_equity,
        equity_percentiles=_percentiles(ending_equity),
        losses=losses,
        loss_percentiles=_percentiles(losses),
        expected_loss=expected_loss,
        average_lgd=float(lgds.mean()) if lgds.size else 0.0,
        expected_loss_rate=expected_loss / nominal if nominal > 0 else 0.0,
        median_roi=median_roi,
        interest_before_simulation=interest_before,
        median_interest_during_simulation=median_during,
        median_total_interest=median_total,
        median_lgd=float(np.median(lgds)) if lgds.size else 0.0,
        yearly_statistics=yearly_statistics(entity, paths),
        correlation_repaired=correlation_repaired,
        degraded_inputs=list(degraded_inputs or []),
        sample_paths=select_sample_paths(paths) if mc_params.sample_paths else {},
        paths=list(paths) if mc_params.keep_paths else None,
    )
    return result


def active_loans(entity: EntityProfile, lender_only: bool = False) -> List[ActiveLoan]:
    """Loans already running at the simulation start."""
    return [
        ActiveLoan(loan.loan_id, loan.terms, months_elapsed=-loan.start_offset_months)
        for loan in entity.loans
        if loan.start_offset_months <= 0 and not (lender_only and loan.is_external)
    ]


def run_entity_simulation(
    entity: EntityProfile,
    mc_params: Optional[MonteCarloParameters] = None,
    model_params: Optional[ModelParameters] = None,
    market_data: Optional[MarketData] = None,
    thresholds: Optional[SolvencyThresholds] = None,
    include_duration: bool = False,
    settings: Optional[Settings] = None,
) -> SimulationResult:
    """
    Run a Monte Carlo credit simulation for one entity.

    Parameters
    ----------
    entity : EntityProfile
        Borrower to simulate.
    mc_params : MonteCarloParameters, optional
        Path count, horizon, seed and parallelism; from settings if omitted.
    model_params : ModelParameters, optional
        Growth, volatility and tax calibration; from settings if omitted.
        Its horizon is aligned with ``mc_params.n_years``.
    market_data : MarketData, optional
        Sector and collateral reference data.
    thresholds : SolvencyThresholds, optional
        Default test configuration.
    include_duration : bool
        Attach a duration report of the entity's running loans.
    settings : Settings, optional
        Source of defaults.

    Returns
    -------
    SimulationResult
        Aggregated statistics.

    Raises
    ------
    InvalidLoanTerms
        If any loan's terms are invalid.
    InvalidCorrelationInput
        If the factor correlation matrix is unusable; no path is run.

    Example
    -------
    >>> result = run_entity_simulation(entity, MonteCarloParameters(n_paths=5000))
    >>> print(f"PD: {result.probability_of_default:.2%}")
    """
    cfg = settings or get_settings()
    mc_params = (mc_params or MonteCarloParameters.from_settings(cfg)).validate()
    model_params = model_params or ModelParameters.from_settings(cfg, n_years=mc_params.n_years)
    if model_params.n_years != mc_params.n_years:
        model_params = replace(model_params, n_years=mc_params.n_years)
    market_data = market_data or MarketData(settings=cfg)

    for loan in entity.loans:
        loan.terms.validate()

    generator = CorrelatedScenarioGenerator(
        correlation_for([entity], market_data),
        seed=mc_params.seed,
        eigenvalue_floor=cfg.psd_eigenvalue_floor,
    )
    projector = EntityFinancialProjector(
        entity,
        model_params,
        market_data,
        generator.correlation,
        SolvencyEvaluator(thresholds or SolvencyThresholds.from_settings(cfg)),
    )
    for note in projector.degraded_inputs:
        logger.warning("Degraded input: %s", note)

    logger.info(
        "Running %d paths over %d years for %s (seed=%d)",
        mc_params.n_paths,
        mc_params.n_years,
        entity.entity_id,
        mc_params.seed,
    )
    paths = [row[0] for row in simulate_paths(generator, [projector], mc_params)]

    result = aggregate_entity_paths(
        entity,
        paths,
        mc_params,
        correlation_repaired=generator.repaired,
        degraded_inputs=projector.degraded_inputs,
    )
    if include_duration:
        result.duration = DurationAnalyzer().analyze(active_loans(entity))

    logger.info(
        "%s: PD=%.2f%% (+/- %.2f%%), expected loss %.2f",
        entity.entity_id,
        100 * result.probability_of_default,
        100 * result.pd_standard_error,
        result.expected_loss,
    )
    return result
