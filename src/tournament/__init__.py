"""
Calibration Tournament - Elimination and Scoring Engine.

Ranks probabilistic forecasting models on calibration across several
independent horizons through a four-phase elimination tournament, with
validity gates, a rankability/extension trigger and an online ensemble of
the surviving models.

Modules:
    horizons - Horizon registry and YAML loader
    config - Tournament configuration, JSON loading and validation
    records - Tagged prediction/label records validated at the boundary
    scoring - Brier/log loss, percentile ranks, baselines, calibration
    state - Model state store (lifecycle, qualification, round scores)
    validity - Validity gates for degenerate prediction behaviour
    qualification - prevalence_margin / top_percent horizon qualification
    phases - Phase 0-3 elimination runner
    extension - Rankability check and extension plan
    ensemble - Rolling-window weighted online ensemble
    diagnostics - Per-round diagnostics and horizon dataset statistics
    leaderboard - Per-horizon leaderboard data
    tournament - Orchestrator: atomic round scoring and final evaluation
    cli - Command-line interface entrypoints
"""

from . import horizons
from . import config
from . import records
from . import scoring
from . import state
from . import validity
from . import qualification
from . import phases
from . import extension
from . import ensemble
from . import diagnostics
from . import leaderboard
from . import tournament

__version__ = "1.0.0"
