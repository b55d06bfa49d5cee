import asyncio
import json
import os
import sys
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger
from pydantic import BaseModel, Field, ValidationError
from pydantic.alias_generators import to_camel

from config import (
    ConfigurationError,
    SimulationConfiguration,
    SimulationValidationError,
    TaxBracket,
    TimeInterval,
    UserParameters,
    parse_simulation_configuration,
    resolve_parameters,
)
from error_handling import (
    create_empty_milestone_result,
    safe_milestone_detection,
    sanitize_milestone_for_display,
    validate_milestones,
    with_graceful_degradation,
)
from milestone_detector import MilestoneDetector
from milestones import MilestoneDetectionConfig, MilestoneDetectionResult
from models import (
    ComparisonMetrics,
    EnhancedSimulationResult,
    FinancialState,
    TransitionPoint,
)
from results import yearly_summary
from simulation import SimulationEngine
from tax import load_tax_brackets
from transitions import validate_transition


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------

class YearlyRow(BaseModel):
    year: int
    cash: float
    investments: float
    superannuation: float
    loan_balance: float
    offset_balance: float
    net_worth: float
    cash_flow: float
    tax_paid: float
    expenses: float


class SimulationResponse(BaseModel):
    result: EnhancedSimulationResult
    comparison: Optional[ComparisonMetrics] = None
    milestones: Optional[MilestoneDetectionResult] = None
    yearly: List[YearlyRow]


class ValidationResponse(BaseModel):
    valid: bool
    transitions: int
    errors: List[str] = Field([])


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

_REQUEST_MODEL_CONFIG = {"alias_generator": to_camel, "validate_by_name": True}


class SimulationRequest(BaseModel):
    config: Dict[str, Any] = Field(
        ...,
        description="Parameters, or {baseParameters, transitions} (same schema as config.json).",
    )
    interval: TimeInterval = "month"
    compare: bool = Field(
        False, description="Also run the base parameters alone and report the difference."
    )
    detect_milestones: bool = True
    milestone_config: Optional[MilestoneDetectionConfig] = None

    model_config = _REQUEST_MODEL_CONFIG


class MilestoneRequest(BaseModel):
    states: List[FinancialState]
    parameters: Dict[str, Any]
    transition_points: List[TransitionPoint] = Field([])
    milestone_config: Optional[MilestoneDetectionConfig] = None

    model_config = _REQUEST_MODEL_CONFIG


# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------

def _configure_logging() -> None:
    logger.remove()
    logger.add(
        sys.stderr,
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
            "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
            "<level>{message}</level>"
        ),
        level="INFO",
        colorize=True,
    )
    logger.add(
        "server.log",
        format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {message}",
        level="INFO",
        rotation="10 MB",
    )


# ---------------------------------------------------------------------------
# App lifecycle
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(_app: FastAPI):
    _configure_logging()
    logger.info("Household finance projection API starting up")
    yield
    logger.info("Household finance projection API shutting down")


app = FastAPI(
    title="Household Finance Projection API",
    description="Projects household cash, investments, super and loans over time and reports financial milestones.",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _parse_config(raw: Dict[str, Any]) -> SimulationConfiguration:
    try:
        return parse_simulation_configuration(raw)
    except (ValidationError, ConfigurationError, ValueError) as e:
        raise HTTPException(status_code=422, detail=f"Invalid configuration: {e}")


def _yearly_rows(states: List[FinancialState]) -> List[Dict[str, Any]]:
    summary = yearly_summary(states)
    if summary.empty:
        return []
    rows = []
    for year, row in summary.iterrows():
        values = {key: float(row[key]) for key in YearlyRow.model_fields if key != "year"}
        rows.append({"year": int(year), **values})
    return rows


def _detect_milestones(
    detector: MilestoneDetector,
    states: List[FinancialState],
    params: Any,
    transition_points: List[TransitionPoint],
) -> MilestoneDetectionResult:
    """Detection plus display clean-up; integrity problems are reported alongside the milestones."""
    detection = with_graceful_degradation(
        lambda: detector.detect_milestones(states, params, transition_points),
        create_empty_milestone_result,
        "milestone detection",
    )
    milestones = [sanitize_milestone_for_display(m) for m in detection.milestones]
    reference = states[0].date if states else None
    problems, failures = safe_milestone_detection(
        lambda: validate_milestones(milestones, reference), "validate milestones", []
    )
    return detection.model_copy(
        update={
            "milestones": milestones,
            "errors": [*detection.errors, *failures, *(p for p in problems if p.severity != "warning")],
            "warnings": [*detection.warnings, *(p.message for p in problems if p.severity == "warning")],
        }
    )


def _run_simulation(
    config: SimulationConfiguration,
    interval: str,
    compare: bool,
    detect: bool,
    milestone_config: Optional[MilestoneDetectionConfig],
) -> dict:
    """Heavy, synchronous work -- called via ``asyncio.to_thread``."""
    engine = SimulationEngine(interval=interval)

    comparison = None
    if compare:
        outcome = engine.run_comparison_simulation(config)
        result = outcome.with_transitions
        comparison = outcome.comparison
    else:
        result = engine.run_simulation_with_transitions(config)

    milestones = None
    if detect:
        milestones = _detect_milestones(
            MilestoneDetector(milestone_config),
            result.states,
            config.base_parameters,
            result.transition_points,
        )

    return {
        "result": result,
        "comparison": comparison,
        "milestones": milestones,
        "yearly": _yearly_rows(result.states),
    }


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@app.get("/api/health")
async def health_check():
    return {"status": "ok"}


@app.get("/api/config/default")
async def get_default_config():
    """Return the bundled ``config.json`` as a ready-to-use template."""
    config_path = os.path.join(os.path.dirname(__file__), "config.json")
    if not os.path.exists(config_path):
        raise HTTPException(status_code=404, detail="Default config.json not found.")
    with open(config_path, "r", encoding="utf-8") as f:
        return json.load(f)


@app.get("/api/tax-config", response_model=List[TaxBracket])
async def get_tax_config():
    """Tax brackets from ``TAX_CONFIG_PATH`` if set, else the built-in table."""
    try:
        return load_tax_brackets(os.environ.get("TAX_CONFIG_PATH"))
    except ConfigurationError as e:
        logger.error(f"Failed to load tax configuration: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/api/validate", response_model=ValidationResponse)
async def validate_config(body: SimulationRequest):
    """Validate a configuration without running any simulation."""
    config = _parse_config(body.config)
    errors = []
    for transition in config.transitions:
        others = [t for t in config.transitions if t.id != transition.id]
        check = validate_transition(transition, config.model_copy(update={"transitions": others}))
        if not check.is_valid:
            errors.append(f"{transition.id}: {check.error}")
    return {"valid": not errors, "transitions": len(config.transitions), "errors": errors}


@app.post("/api/simulate", response_model=SimulationResponse)
async def simulate(body: SimulationRequest):
    """Run the projection and, unless disabled, milestone detection."""
    config = _parse_config(body.config)
    logger.info(
        f"Received simulation request: {config.base_parameters.simulation_years} years, "
        f"{len(config.transitions)} transition(s), interval '{body.interval}'"
    )

    try:
        result = await asyncio.to_thread(
            _run_simulation,
            config,
            body.interval,
            body.compare,
            body.detect_milestones,
            body.milestone_config,
        )
    except SimulationValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.exception(f"Simulation failed: {e}")
        raise HTTPException(status_code=500, detail=f"Simulation error: {e}")

    logger.info(f"Simulation complete: {len(result['result'].states)} states")
    return result


@app.post("/api/milestones", response_model=MilestoneDetectionResult)
async def detect_milestones(body: MilestoneRequest):
    """Detect milestones over states produced by an earlier run."""
    try:
        params = UserParameters.model_validate(body.parameters)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=f"Invalid parameters: {e}")

    return await asyncio.to_thread(
        _detect_milestones,
        MilestoneDetector(body.milestone_config),
        body.states,
        resolve_parameters(params),
        body.transition_points,
    )


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    _configure_logging()
    uvicorn.run("server:app", host="0.0.0.0", port=8080, reload=True)
