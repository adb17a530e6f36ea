"""
Simulation Request Loader and Validator
=======================================

Parses, validates and hydrates simulation requests from JSON-like dicts.
The loader performs:

1. **Syntactic Validation**: JSON schema compliance.
2. **Hydration**: Convert raw dicts into typed engine objects.
3. **Semantic Validation**: Loan terms, sector weights and unique ids.

Missing optional data is not substituted silently. A revenue breakdown with
no positive amounts is recorded on the hydrated entity as a degraded input;
entities without a sector breakdown and collateral without a property type
are flagged by the projector. Both surface on the simulation result.

Example
-------
>>> from loan_risk_platform.engine.loader import RequestLoader
>>> loader = RequestLoader()
>>> request = loader.load_portfolio(portfolio_json)
>>> result = PortfolioAggregator(request.mc_params, request.model_params).run(request.entities)
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional, Tuple

from jsonschema import ValidationError, validate

from ..config import Settings, get_settings
from .amortization import LoanTerms, RedemptionType
from .exceptions import EngineError, MissingMarketData, RequestValidationError
from .market_data import PropertyType, SectorExposure
from .monte_carlo import MonteCarloParameters
from .projection import (
    CollateralPosition,
    EntityProfile,
    FinancialSnapshot,
    LoanPosition,
    ModelParameters,
)

logger = logging.getLogger("LoanRisk.Loader")


# =============================================================================
# Request Schemas
# =============================================================================

_NUMBER = {"type": "number"}
_NON_NEGATIVE = {"type": "number", "minimum": 0}

COLLATERAL_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["collateral_id", "appraisal_value"],
    "properties": {
        "collateral_id": {"type": "string"},
        "appraisal_value": _NON_NEGATIVE,
        "indexed_value": _NON_NEGATIVE,
        "property_type": {"type": ["string", "null"]},
        "haircut": {"type": "number", "minimum": 0, "maximum": 1},
        "haircut_percent": {"type": "number", "minimum": 0, "maximum": 100},
        "subordination": _NON_NEGATIVE,
    },
}

LOAN_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["loan_id", "principal", "annual_rate", "tenor_months"],
    "properties": {
        "loan_id": {"type": "string"},
        "principal": _NUMBER,
        "annual_rate": _NUMBER,
        "tenor_months": {"type": "integer"},
        "interest_only_months": {"type": "integer"},
        "redemption_type": {"type": "string"},
        "amount_drawn": {"type": ["number", "null"]},
        "start_offset_months": {"type": "integer"},
        "is_external": {"type": "boolean"},
        "collateral": {"type": "array", "items": COLLATERAL_SCHEMA},
    },
}

ENTITY_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["entity_id", "financials"],
    "properties": {
        "entity_id": {"type": "string"},
        "financials": {
            "type": "object",
            "required": ["revenue", "operating_costs", "equity", "total_assets", "liquid_assets"],
            "properties": {
                "revenue": _NUMBER,
                "operating_costs": _NUMBER,
                "equity": _NUMBER,
                "total_assets": _NUMBER,
                "liquid_assets": _NUMBER,
                "book_year": {"type": "integer"},
            },
        },
        "sector_weights": {"type": "object", "additionalProperties": _NUMBER},
        "revenue_breakdown": {"type": "object", "additionalProperties": {"type": ["number", "null"]}},
        "revenue_growth": _NUMBER,
        "cost_growth": _NUMBER,
        "residual_volatility": _NON_NEGATIVE,
        "loans": {"type": "array", "items": LOAN_SCHEMA},
    },
}

SIMULATION_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "n_paths": {"type": "integer", "minimum": 1},
        "n_years": {"type": "integer", "minimum": 1},
        "seed": {"type": "integer"},
        "parallel": {"type": "boolean"},
        "n_workers": {"type": "integer", "minimum": 1},
        "batch_size": {"type": "integer", "minimum": 1},
        "keep_paths": {"type": "boolean"},
        "sample_paths": {"type": "boolean"},
    },
    "additionalProperties": False,
}

MODEL_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "revenue_growth": _NUMBER,
        "cost_growth": _NUMBER,
        "revenue_volatility": _NON_NEGATIVE,
        "cost_volatility": _NON_NEGATIVE,
        "tax_rate": {"type": "number", "minimum": 0, "maximum": 1},
        "collateral_return": _NUMBER,
        "collateral_volatility": _NON_NEGATIVE,
    },
    "additionalProperties": False,
}

ENTITY_REQUEST_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["entity"],
    "properties": {
        "entity": ENTITY_SCHEMA,
        "simulation": SIMULATION_SCHEMA,
        "model": MODEL_SCHEMA,
        "include_duration": {"type": "boolean"},
    },
}

PORTFOLIO_REQUEST_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["entities"],
    "properties": {
        "portfolio_id": {"type": "string"},
        "entities": {"type": "array", "items": ENTITY_SCHEMA, "minItems": 1},
        "simulation": SIMULATION_SCHEMA,
        "model": MODEL_SCHEMA,
        "loss_threshold": {"type": "number", "minimum": 0, "maximum": 1},
        "include_duration": {"type": "boolean"},
    },
}


# =============================================================================
# Hydrated Requests
# =============================================================================


@dataclass(frozen=True)
class EntityRequest:
    """Validated single-entity simulation request."""

    entity: EntityProfile
    mc_params: MonteCarloParameters
    model_params: ModelParameters
    include_duration: bool = False


@dataclass(frozen=True)
class PortfolioRequest:
    """Validated portfolio simulation request."""

    portfolio_id: str
    entities: Tuple[EntityProfile, ...]
    mc_params: MonteCarloParameters
    model_params: ModelParameters
    loss_threshold: Optional[float] = None
    include_duration: bool = False


# =============================================================================
# Loader
# =============================================================================


class RequestLoader:
    """
    Load a simulation request, validate it, and hydrate engine objects.

    Parameters
    ----------
    settings : Settings, optional
        Source of simulation and model defaults for omitted fields.
    entity_schema_path, portfolio_schema_path : str, optional
        JSON Schema files replacing the built-in request schemas.

    Example
    -------
    >>> loader = RequestLoader()
    >>> request = loader.load_entity({"entity": entity_json})
    >>> print(request.entity.entity_id, request.mc_params.n_paths)
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        entity_schema_path: Optional[str] = None,
        portfolio_schema_path: Optional[str] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.entity_schema = self._load_schema(entity_schema_path) if entity_schema_path else ENTITY_REQUEST_SCHEMA
        self.portfolio_schema = (
            self._load_schema(portfolio_schema_path) if portfolio_schema_path else PORTFOLIO_REQUEST_SCHEMA
        )

    def _load_schema(self, path: str) -> Dict[str, Any]:
        try:
            with open(path, "r") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError):
            logger.error(f"Failed to load schema file: {path}")
            raise

    def load_entity(self, json_data: Dict[str, Any]) -> EntityRequest:
        """
        Parse and validate a single-entity request.

        Raises
        ------
        RequestValidationError
            If the payload is structurally or semantically invalid.
        """
        self._validate_syntax(json_data, self.entity_schema)
        mc_params, model_params = self._hydrate_parameters(json_data)
        entity = self._hydrate_entity(json_data["entity"], "entity")
        logger.info(f"Loaded entity request: {entity.entity_id} ({len(entity.loans)} loans)")
        return EntityRequest(
            entity=entity,
            mc_params=mc_params,
            model_params=model_params,
            include_duration=bool(json_data.get("include_duration", False)),
        )

    def load_portfolio(self, json_data: Dict[str, Any]) -> PortfolioRequest:
        """
        Parse and validate a portfolio request.

        Raises
        ------
        RequestValidationError
            If the payload is invalid or entity ids repeat.
        """
        self._validate_syntax(json_data, self.portfolio_schema)
        mc_params, model_params = self._hydrate_parameters(json_data)
        entities = tuple(
            self._hydrate_entity(raw, f"entities.{i}") for i, raw in enumerate(json_data["entities"])
        )

        seen = set()
        for i, entity in enumerate(entities):
            if entity.entity_id in seen:
                raise RequestValidationError(
                    f"Duplicate entity id: {entity.entity_id}", path=f"entities.{i}.entity_id"
                )
            seen.add(entity.entity_id)

        portfolio_id = json_data.get("portfolio_id", "portfolio")
        logger.info(f"Loaded portfolio request: {portfolio_id} ({len(entities)} entities)")
        return PortfolioRequest(
            portfolio_id=portfolio_id,
            entities=entities,
            mc_params=mc_params,
            model_params=model_params,
            loss_threshold=json_data.get("loss_threshold"),
            include_duration=bool(json_data.get("include_duration", False)),
        )

    def _validate_syntax(self, data: Dict[str, Any], schema: Dict[str, Any]) -> None:
        try:
            validate(instance=data, schema=schema)
        except ValidationError as e:
            path = ".".join(str(p) for p in e.absolute_path)
            logger.error(f"Schema Validation Failed at {path or '<root>'}: {e.message}")
            raise RequestValidationError(f"Invalid request structure: {e.message}", path=path)

    def _hydrate_parameters(self, data: Dict[str, Any]) -> Tuple[MonteCarloParameters, ModelParameters]:
        mc_params = MonteCarloParameters.from_settings(self.settings, **data.get("simulation", {}))
        model_params = replace(
            ModelParameters.from_settings(self.settings, n_years=mc_params.n_years),
            **data.get("model", {}),
        )
        return mc_params, model_params

    def _hydrate_entity(self, raw: Dict[str, Any], path: str) -> EntityProfile:
        """
        Convert one raw entity into an :class:`EntityProfile`.

        Sector weights win over a revenue breakdown when both are given.
        """
        entity_id = raw["entity_id"]
        fin = raw["financials"]
        snapshot = FinancialSnapshot(
            revenue=float(fin["revenue"]),
            operating_costs=float(fin["operating_costs"]),
            equity=float(fin["equity"]),
            total_assets=float(fin["total_assets"]),
            liquid_assets=float(fin["liquid_assets"]),
            book_year=fin.get("book_year"),
        )

        degraded: List[str] = []
        try:
            if raw.get("sector_weights"):
                exposure = SectorExposure(raw["sector_weights"])
            elif raw.get("revenue_breakdown"):
                exposure = SectorExposure.from_revenue_breakdown(raw["revenue_breakdown"])
                if not any((v or 0) > 0 for v in raw["revenue_breakdown"].values()):
                    degraded.append(f"{entity_id}: revenue breakdown has no positive amounts, sector Other used")
            else:
                exposure = SectorExposure()
        except (ValueError, MissingMarketData) as e:
            raise RequestValidationError(f"Invalid sector exposure for {entity_id}: {e}", path=f"{path}.sector_weights")

        loans = []
        for i, raw_loan in enumerate(raw.get("loans", [])):
            loan_path = f"{path}.loans.{i}"
            loans.append(self._hydrate_loan(raw_loan, loan_path))

        return EntityProfile(
            entity_id=entity_id,
            snapshot=snapshot,
            loans=tuple(loans),
            exposure=exposure,
            revenue_growth=raw.get("revenue_growth"),
            cost_growth=raw.get("cost_growth"),
            residual_volatility=raw.get("residual_volatility"),
            degraded_inputs=tuple(degraded),
        )

    def _hydrate_loan(self, raw: Dict[str, Any], path: str) -> LoanPosition:
        try:
            terms = LoanTerms(
                principal=float(raw["principal"]),
                annual_rate=float(raw["annual_rate"]),
                tenor_months=int(raw["tenor_months"]),
                interest_only_months=int(raw.get("interest_only_months", 0)),
                redemption_type=RedemptionType.parse(raw.get("redemption_type", RedemptionType.ANNUITY)),
                amount_drawn=raw.get("amount_drawn"),
            ).validate()
        except EngineError as e:
            field = getattr(e, "field", None)
            raise RequestValidationError(str(e), path=f"{path}.{field}" if field else path)

        collateral = []
        for j, item in enumerate(raw.get("collateral", [])):
            property_type = None
            if item.get("property_type"):
                try:
                    property_type = PropertyType.parse(item["property_type"])
                except MissingMarketData as e:
                    raise RequestValidationError(str(e), path=f"{path}.collateral.{j}.property_type")
            if "haircut_percent" in item:
                haircut = float(item["haircut_percent"]) / 100.0
            else:
                haircut = float(item.get("haircut", 0.0))
            collateral.append(
                CollateralPosition(
                    collateral_id=item["collateral_id"],
                    appraisal_value=float(item["appraisal_value"]),
                    property_type=property_type,
                    haircut=haircut,
                    subordination=float(item.get("subordination", 0.0)),
                    indexed_value=item.get("indexed_value"),
                )
            )

        return LoanPosition(
            loan_id=raw["loan_id"],
            terms=terms,
            start_offset_months=int(raw.get("start_offset_months", 0)),
            collateral=tuple(collateral),
            is_external=bool(raw.get("is_external", False)),
        )
