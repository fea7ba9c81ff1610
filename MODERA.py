#!/usr/bin/env python3
# ==============================================================================
# MODERA: Moderator Discovery and Effect Reporting Analysis
# Baseline predictors and moderators of a binary treatment outcome in a
# factorial (behavioral x pharmacotherapy) cessation trial.
#
# Pipeline: multiple imputation -> treatment-group partition -> LOOCV
# variable selection (LASSO, elastic net, random forest, SVM-RFE) -> cross-group
# aggregation -> stepwise moderation GLM -> odds-ratio reporting.
# ==============================================================================

VERSION = "1.0.0"  # MODERA version for audit and reproducibility

import argparse
import copy
import hashlib
import hmac
import itertools
import json
import math
import os
import platform
import re
import secrets
import sys
import time
import traceback
import warnings
from collections import Counter, OrderedDict
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
import statsmodels.api as sm
from joblib import Parallel, delayed
from scipy import stats
from sklearn.ensemble import RandomForestClassifier
from sklearn.exceptions import ConvergenceWarning
from sklearn.experimental import enable_iterative_imputer  # noqa: F401
from sklearn.feature_selection import RFE
from sklearn.impute import IterativeImputer
from sklearn.linear_model import LogisticRegression
from sklearn.metrics import roc_auc_score
from sklearn.model_selection import KFold, LeaveOneOut, StratifiedKFold
from sklearn.pipeline import Pipeline
from sklearn.preprocessing import StandardScaler
from sklearn.svm import LinearSVC
from statsmodels.tools.sm_exceptions import (
    PerfectSeparationError,
    PerfectSeparationWarning,
)

"""
MODERA: variable selection and moderation analysis for randomized trials

References:
[1] Tibshirani R. Regression shrinkage and selection via the lasso.
    J R Stat Soc B 1996;58:267-88.
[2] Zou H, Hastie T. Regularization and variable selection via the elastic
    net. J R Stat Soc B 2005;67:301-20.
[3] Breiman L. Random forests. Machine Learning 2001;45:5-32.
[4] Guyon I, et al. Gene selection for cancer classification using support
    vector machines. Machine Learning 2002;46:389-422.
[5] Rubin DB. Multiple Imputation for Nonresponse in Surveys. Wiley, 1987.
[6] Kraemer HC, et al. Mediators and moderators of treatment effects in
    randomized clinical trials. Arch Gen Psychiatry 2002;59:877-83.
"""

# ---------------------------
# sklearn Version Compatibility
# ---------------------------


def check_sklearn_compatibility() -> Dict[str, Any]:
    """
    Check the sklearn version for the LogisticRegression penalty API.

    scikit-learn 1.8 deprecates ``penalty`` in LogisticRegression; the mix of
    L1 and L2 is then given by ``l1_ratio`` alone. Older versions need
    ``penalty="elasticnet"`` for ``l1_ratio`` to be honoured.

    Returns:
        Dictionary with version info and compatibility flags
    """
    import sklearn as _sk
    from packaging import version

    sklearn_version = _sk.__version__
    parsed = version.parse(sklearn_version)
    major, minor = parsed.major, parsed.minor

    compatibility = {
        "sklearn_version": sklearn_version,
        "major": major,
        "minor": minor,
        "penalty_param_deprecated": (major, minor) >= (1, 8),
        "warnings": [],
    }
    if (major, minor) < (1, 2):
        compatibility["warnings"].append(
            f"sklearn {sklearn_version} is old; upgrade to 1.2+ recommended"
        )
    return compatibility


# Cache the compatibility check
_SKLEARN_COMPAT = check_sklearn_compatibility()

# ---------------------------
# Defaults
# ---------------------------

RANDOM_STATE = 42
OUTPUT_ROOT_DEFAULT = "MODERA_OUTPUT"

FEATURE_TYPES = ("continuous", "binary", "nominal")

# Penalty strength grid (glmnet lambda scale: per-observation loss)
LAMBDA_GRID = np.logspace(-3, 3, 100)
L1_RATIO_GRID = np.round(np.arange(0.0, 1.01, 0.1), 1)
LOGISTIC_MAX_ITER = 5000
LOGISTIC_TOL = 1e-4

RF_ESTIMATORS = 500  # randomForest default ntree
RFE_SUBSET_SIZES = (5, 6, 7, 8, 9)
SVM_MAX_ITER = 10000

# One retry after a convergence failure: tol x 10, iterations x 2
CONVERGENCE_RELAX_TOL = 10.0
CONVERGENCE_RELAX_ITER = 2

SCORE_TIE_ATOL = 1e-12
SCORING_COLUMNS = {"accuracy": "accuracy", "roc_auc": "auc"}

IMPUTATION_COUNT_DEFAULT = 5
IMPUTATION_MAX_ITER = 10
PMM_DONORS = 5

GLM_MAX_ITER = 100
STEPWISE_TOL = 1e-8
STEPWISE_MAX_STEPS = 200

# Separation diagnostics on the logit scale
SEPARATION_COEF_LIMIT = 10.0
SEPARATION_SE_LIMIT = 1e3
SEPARATION_SE_RATIO = 5.0

CONFIDENCE_LEVEL = 0.95

# ---------------------------
# Smart Multicore Configuration
# ---------------------------
# Reserve 2 CPU cores for system responsiveness
_CPU_COUNT = os.cpu_count() or 4
SMART_N_JOBS = max(1, _CPU_COUNT - 2)


# ---------------------------
# Errors
# ---------------------------


class ModeraError(Exception):
    """
    Base error for the analysis core.

    Carries the analysis unit (group, algorithm, imputation index) and, for
    model errors, the offending term. The positional args mirror __init__ so
    errors pickle cleanly across joblib workers.
    """

    def __init__(
        self,
        message: str,
        group: Optional[str] = None,
        algorithm: Optional[str] = None,
        imputation: Optional[int] = None,
        term: Optional[str] = None,
    ):
        super().__init__(message, group, algorithm, imputation, term)
        self.message = message
        self.group = group
        self.algorithm = algorithm
        self.imputation = imputation
        self.term = term

    def context(self) -> Dict[str, Any]:
        pairs = (
            ("group", self.group),
            ("algorithm", self.algorithm),
            ("imputation", self.imputation),
            ("term", self.term),
        )
        return {k: v for k, v in pairs if v is not None}

    def with_context(self, **kwargs) -> "ModeraError":
        """Copy of this error with missing context fields filled in."""
        ctx = {
            "group": self.group,
            "algorithm": self.algorithm,
            "imputation": self.imputation,
            "term": self.term,
        }
        for key, value in kwargs.items():
            if ctx.get(key) is None:
                ctx[key] = value
        return type(self)(self.message, **ctx)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_type": type(self).__name__,
            "message": self.message,
            **self.context(),
        }

    def __str__(self) -> str:
        ctx = self.context()
        if not ctx:
            return self.message
        detail = ", ".join(f"{k}={v}" for k, v in ctx.items())
        return f"{self.message} ({detail})"


class SchemaError(ModeraError):
    """Dataset does not match its declared feature schema."""


class InsufficientDataError(ModeraError):
    """A fold or subgroup lacks one of the two outcome classes."""


class NonConvergenceError(ModeraError):
    """Optimizer iteration budget exhausted, including the relaxed retry."""


class SeparationError(ModeraError):
    """A maximum-likelihood coefficient diverges (perfect separation)."""


class DegenerateTableError(ModeraError):
    """Zero cell in a 2x2 table with no continuity correction requested."""


class AggregationError(ModeraError):
    """No usable selection result for one or more groups."""


# ---------------------------
# Utilities
# ---------------------------


def now_ts() -> str:
    return time.strftime("%Y-%m-%d %H:%M:%S")


def safe_name(s: str) -> str:
    s = re.sub(r"[^a-zA-Z0-9._-]+", "_", str(s)).strip("_")
    return s[:120] if s else "dataset"


def _json_default(obj: Any):
    if isinstance(obj, np.integer):
        return int(obj)
    if isinstance(obj, np.floating):
        return float(obj)
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    if isinstance(obj, (set, frozenset)):
        return sorted(obj)
    return str(obj)


def sniff_sep(path: Path) -> str:
    """Auto-detect delimiter for text-based tabular files."""
    with open(path, "r", errors="ignore") as f:
        head = f.readline()
    if "\t" in head and "," not in head:
        return "\t"
    if ";" in head and "," not in head:
        return ";"
    return ","


def sha256_file(path: Path) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


def smart_read_file(path: Path, audit: Optional["AuditLog"] = None) -> pd.DataFrame:
    """
    Read a participant-level table from CSV, TSV, TXT or Excel.

    The file hash is written to the audit log so that every output can be
    tied back to the exact input.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Data file not found: {path}")
    suffix = path.suffix.lower()

    if suffix in {".xlsx", ".xls"}:
        engine = "openpyxl" if suffix == ".xlsx" else None
        df = pd.read_excel(path, engine=engine)
    else:
        df = pd.read_csv(path, sep=sniff_sep(path), low_memory=False)

    if audit:
        audit.log(
            "DATA_READ",
            {
                "file": str(path),
                "sha256": sha256_file(path),
                "rows": int(len(df)),
                "cols": int(df.shape[1]),
            },
        )
    return df


def write_csv(path: Path, df: pd.DataFrame):
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, index=False)


def write_json(path: Path, obj: Dict[str, Any]):
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(obj, f, indent=2, ensure_ascii=False, default=_json_default)


def get_versions() -> Dict[str, str]:
    import joblib as _jl
    import scipy as _sp
    import sklearn as _sk
    import statsmodels as _sm

    return {
        "python": sys.version.replace("\n", " "),
        "numpy": np.__version__,
        "pandas": pd.__version__,
        "scipy": _sp.__version__,
        "sklearn": _sk.__version__,
        "statsmodels": _sm.__version__,
        "joblib": _jl.__version__,
        "os_system": platform.system(),
        "os_release": platform.release(),
        "machine": platform.machine(),
        "cpu_count": str(os.cpu_count() or "unknown"),
    }


# ---------------------------
# Immutable audit log (JSONL)
# ---------------------------


class AuditLog:
    """
    Append-only audit trail for one analysis session.

    Every entry carries the session id and a sequence number. Closing the
    session writes an HMAC-SHA256 over all entries, keyed by a per-session
    random key, so any later edit of the log invalidates the seal.
    """

    def __init__(self, jsonl_path: Path):
        self.jsonl_path = Path(jsonl_path)
        self.jsonl_path.parent.mkdir(parents=True, exist_ok=True)

        self._key = secrets.token_bytes(32)
        self.session_id = hashlib.sha256(self._key).hexdigest()[:16].upper()
        self.session_start = now_ts()
        self.log_count = 0
        self._entries: List[Dict[str, Any]] = []

        self._write_entry(
            "SESSION_INIT",
            {
                "session_id": self.session_id,
                "session_start": self.session_start,
                "modera_version": VERSION,
            },
        )

    def _write_entry(self, event: str, details: Optional[Dict[str, Any]] = None):
        self.log_count += 1
        entry = {
            "ts": now_ts(),
            "event": event,
            "details": details or {},
            "session_id": self.session_id,
            "log_sequence": self.log_count,
        }
        self._entries.append(entry)
        with open(self.jsonl_path, "a", encoding="utf-8") as f:
            f.write(json.dumps(entry, ensure_ascii=False, default=_json_default) + "\n")
        return entry

    def log(self, event: str, details: Optional[Dict[str, Any]] = None):
        """Log an event with full audit trail."""
        return self._write_entry(event, details)

    def integrity_hash(self) -> str:
        serialized = json.dumps(
            self._entries, sort_keys=True, ensure_ascii=False, default=_json_default
        )
        return (
            hmac.new(self._key, serialized.encode("utf-8"), hashlib.sha256)
            .hexdigest()
            .upper()
        )

    def finalize_session(self) -> Dict[str, Any]:
        """Seal the session; the returned hash covers every prior entry."""
        digest = self.integrity_hash()
        summary = {
            "session_id": self.session_id,
            "session_start": self.session_start,
            "session_end": now_ts(),
            "total_entries": self.log_count,
            "integrity_hash": digest,
            "integrity_algorithm": "HMAC-SHA256",
        }
        self._write_entry(
            "SESSION_FINALIZED",
            {"integrity_hash": digest, "total_entries": self.log_count},
        )
        return summary

    def get_verification_info(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "session_start": self.session_start,
            "log_file": str(self.jsonl_path),
            "log_entries": self.log_count,
            "modera_version": VERSION,
        }


# ---------------------------
# Configuration
# ---------------------------


class AnalysisSettings:
    """
    Explicit analysis policies with their defaults.

    Every decision a statistical library would otherwise make implicitly
    (hyperparameter tie-break, stepwise direction, pooling of imputations,
    separation handling, continuity correction) is a named setting here.

    Overrides, lowest to highest precedence:
        MODERA_<KEY> environment variables (JSON-parsed when possible)
        session_config dictionary (e.g. loaded from --config JSON)
    """

    DEFAULTS: Dict[str, Any] = {
        "seed": RANDOM_STATE,
        "imputation_count": IMPUTATION_COUNT_DEFAULT,
        "imputation_method": "pmm",
        "imputation_max_iter": IMPUTATION_MAX_ITER,
        "algorithms": ["lasso", "elastic_net", "random_forest", "svm_rfe"],
        "folding": "leave-one-out",
        "n_splits": 5,
        "scoring": "accuracy",
        "tie_break": "sparsest",
        "selection_pooling": "majority",
        "lambda_grid": None,
        "l1_ratio_grid": None,
        "rf_estimators": RF_ESTIMATORS,
        "rf_max_features": None,
        "importance_threshold": "mean",
        "rfe_sizes": list(RFE_SUBSET_SIZES),
        "strict_aggregation": True,
        "moderation_treatment": None,
        "higher_order": [],
        "criterion": "aic",
        "stepwise_direction": "both",
        "on_separation": "drop",
        "continuity_correction": None,
        "n_jobs": SMART_N_JOBS,
    }

    CHOICES: Dict[str, Tuple] = {
        "imputation_method": ("pmm", "norm"),
        "folding": ("leave-one-out", "k-fold"),
        "scoring": ("accuracy", "roc_auc"),
        "tie_break": ("sparsest", "first"),
        "selection_pooling": ("majority", "union", "intersection", "first"),
        "criterion": ("aic", "bic"),
        "stepwise_direction": ("both", "backward", "forward", "none"),
        "on_separation": ("drop", "abort"),
    }

    ENV_PREFIX = "MODERA_"

    @classmethod
    def resolve(cls, session_config: Optional[Dict] = None) -> Dict[str, Any]:
        settings = copy.deepcopy(cls.DEFAULTS)

        for key in settings:
            raw = os.environ.get(cls.ENV_PREFIX + key.upper())
            if raw is None:
                continue
            try:
                settings[key] = json.loads(raw)
            except json.JSONDecodeError:
                settings[key] = raw

        for key, value in (session_config or {}).items():
            if key not in settings:
                raise ValueError(f"Unknown analysis setting: {key}")
            settings[key] = value

        for key, allowed in cls.CHOICES.items():
            if settings[key] not in allowed:
                raise ValueError(
                    f"Setting {key}={settings[key]!r} not in {list(allowed)}"
                )
        unknown = [a for a in settings["algorithms"] if a not in ALGORITHMS]
        if unknown:
            raise ValueError(f"Unknown selection algorithm(s): {unknown}")
        cc = settings["continuity_correction"]
        if cc is not None and float(cc) <= 0:
            raise ValueError("continuity_correction must be positive or null")
        if int(settings["imputation_count"]) < 1:
            raise ValueError("imputation_count must be >= 1")
        return settings


# ---------------------------
# Feature schema
# ---------------------------


def normalize_binary_target(y: pd.Series) -> Optional[pd.Series]:
    u = pd.Series(y.dropna().unique())
    if u.nunique() > 2 or u.empty:
        return None
    try:
        uu = sorted(list(pd.to_numeric(u, errors="raise")))
        if set(uu).issubset({0, 1}):
            return y.astype(int)
    except (ValueError, TypeError):
        pass
    if u.nunique() != 2:
        return None
    vals = sorted(list(u.astype(str).unique()))
    mapper = {vals[0]: 0, vals[-1]: 1}
    return y.astype(str).map(mapper).astype(int)


def _level_key(value: Any) -> str:
    if isinstance(value, (float, np.floating)) and float(value).is_integer():
        return str(int(value))
    return str(value)


class FeatureSchema:
    """
    Explicit per-feature type declaration attached to a dataset.

    features maps name -> {"type": continuous|binary|nominal, "levels": [...]}
    (a bare type string is accepted). The first nominal level is the
    reference level for indicator coding. Outcome and the two treatment
    indicators are binary and kept apart from the baseline features.
    """

    def __init__(
        self,
        features: Dict[str, Any],
        outcome: str,
        behavioral: str,
        pharmacotherapy: str,
    ):
        self.outcome = outcome
        self.behavioral = behavioral
        self.pharmacotherapy = pharmacotherapy
        self.features: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()

        reserved = {outcome, behavioral, pharmacotherapy}
        if len(reserved) != 3:
            raise SchemaError("Outcome and treatment columns must be distinct")

        for name, decl in features.items():
            if isinstance(decl, str):
                decl = {"type": decl}
            ftype = decl.get("type")
            if ftype not in FEATURE_TYPES:
                raise SchemaError(f"Feature '{name}' has unknown type '{ftype}'")
            if name in reserved:
                raise SchemaError(
                    f"Feature '{name}' is declared as outcome or treatment"
                )
            if ":" in name or "[" in name:
                raise SchemaError(f"Feature name '{name}' may not contain ':' or '['")
            levels = list(decl.get("levels") or [])
            if ftype == "binary":
                levels = [0, 1]
            elif ftype == "nominal":
                if len(levels) < 2:
                    raise SchemaError(f"Nominal feature '{name}' needs >= 2 levels")
                if len({_level_key(v) for v in levels}) != len(levels):
                    raise SchemaError(f"Nominal feature '{name}' has duplicate levels")
            self.features[name] = {"type": ftype, "levels": levels}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "FeatureSchema":
        try:
            return cls(
                features=d["features"],
                outcome=d["outcome"],
                behavioral=d["behavioral"],
                pharmacotherapy=d["pharmacotherapy"],
            )
        except KeyError as e:
            raise SchemaError(f"Schema is missing required key {e}") from e

    @classmethod
    def from_json(cls, path: Path) -> "FeatureSchema":
        with open(path, "r", encoding="utf-8") as f:
            return cls.from_dict(json.load(f))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "features": {k: dict(v) for k, v in self.features.items()},
            "outcome": self.outcome,
            "behavioral": self.behavioral,
            "pharmacotherapy": self.pharmacotherapy,
        }

    @property
    def feature_names(self) -> List[str]:
        return list(self.features)

    @property
    def columns(self) -> List[str]:
        return [self.outcome, self.behavioral, self.pharmacotherapy] + self.feature_names

    def type_of(self, name: str) -> str:
        return self.features[name]["type"]

    def levels_of(self, name: str) -> List[Any]:
        return list(self.features[name]["levels"])

    def prepare(self, df: pd.DataFrame, audit: Optional[AuditLog] = None) -> pd.DataFrame:
        """
        Return a typed copy of the declared columns.

        Raises SchemaError for absent columns, missing or non-binary outcome
        and treatment values, non-numeric continuous values, binary values
        outside {0, 1} and nominal values outside the declared levels.
        Undeclared columns are left out of the returned frame.
        """
        missing = [c for c in self.columns if c not in df.columns]
        if missing:
            raise SchemaError(f"Declared columns absent from data: {missing}")

        ignored = [c for c in df.columns if c not in self.columns]
        out = df[self.columns].copy().reset_index(drop=True)

        for col in (self.outcome, self.behavioral, self.pharmacotherapy):
            if out[col].isnull().any():
                raise SchemaError(
                    f"Column '{col}' has missing values; outcome and treatment "
                    "assignment must be complete"
                )
            y = normalize_binary_target(out[col])
            if y is None:
                raise SchemaError(f"Column '{col}' is not binary")
            out[col] = y.astype(int)

        for name, decl in self.features.items():
            s = out[name]
            if s.isnull().all():
                raise SchemaError(f"Feature '{name}' has no observed values")
            if decl["type"] in ("continuous", "binary"):
                num = pd.to_numeric(s, errors="coerce")
                if (num.isna() & s.notna()).any():
                    raise SchemaError(f"Feature '{name}' has non-numeric values")
                if decl["type"] == "binary":
                    bad = set(num.dropna().unique()) - {0, 1}
                    if bad:
                        raise SchemaError(
                            f"Binary feature '{name}' has values outside {{0, 1}}: "
                            f"{sorted(bad)[:5]}"
                        )
                out[name] = num.astype(float)
            else:
                mapper = {_level_key(v): v for v in decl["levels"]}
                observed = {_level_key(v) for v in s.dropna().unique()}
                unknown = observed - set(mapper)
                if unknown:
                    raise SchemaError(
                        f"Nominal feature '{name}' has undeclared levels: "
                        f"{sorted(unknown)[:5]}"
                    )
                out[name] = s.map(lambda v: v if pd.isna(v) else mapper[_level_key(v)])
                out[name] = out[name].astype(object)

        if audit:
            audit.log(
                "SCHEMA_APPLIED",
                {
                    "n_features": len(self.features),
                    "types": dict(Counter(d["type"] for d in self.features.values())),
                    "ignored_columns": ignored,
                },
            )
        return out


def load_schema(path: Union[str, Path]) -> FeatureSchema:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Schema file not found: {path}")
    return FeatureSchema.from_json(path)


def verify_column_types(
    df: pd.DataFrame, schema: FeatureSchema, audit: Optional[AuditLog] = None
) -> Dict[str, Any]:
    """
    Compare declared feature types against observed data patterns.

    Reports but does not raise: the declaration stays authoritative.
    """
    issues = []
    for name, decl in schema.features.items():
        s = df[name].dropna()
        if s.empty:
            continue
        nunique = s.nunique()
        if decl["type"] == "continuous" and nunique <= 2:
            issues.append(
                {
                    "col": name,
                    "declared": "continuous",
                    "issue": "continuous_looks_binary",
                    "n_unique": int(nunique),
                    "severity": "warning",
                }
            )
        elif decl["type"] == "nominal":
            unused = [
                lvl
                for lvl in decl["levels"]
                if _level_key(lvl) not in {_level_key(v) for v in s.unique()}
            ]
            if unused:
                issues.append(
                    {
                        "col": name,
                        "declared": "nominal",
                        "issue": "declared_level_unobserved",
                        "levels": [str(v) for v in unused],
                        "severity": "info",
                    }
                )
        elif decl["type"] == "binary" and nunique < 2:
            issues.append(
                {
                    "col": name,
                    "declared": "binary",
                    "issue": "binary_constant",
                    "severity": "warning",
                }
            )

    result = {
        "issues": issues,
        "n_issues": len(issues),
        "n_warnings": len([i for i in issues if i["severity"] == "warning"]),
    }
    if audit and issues:
        audit.log(
            "COLUMN_TYPE_VERIFICATION",
            {"n_issues": len(issues), "columns_affected": [i["col"] for i in issues]},
        )
    return result


def _factor_columns(schema: FeatureSchema, name: str) -> List[str]:
    if schema.type_of(name) == "nominal":
        return [f"{name}[{lvl}]" for lvl in schema.levels_of(name)[1:]]
    return [name]


def encode_features(
    df: pd.DataFrame,
    schema: FeatureSchema,
    features: Optional[Sequence[str]] = None,
    one_hot: bool = True,
) -> Tuple[pd.DataFrame, Dict[str, str]]:
    """
    Numeric design frame for the given features.

    Nominal-k features become k-1 indicator columns ``name[level]`` when
    one_hot, or integer level codes otherwise (tree models).

    Returns:
        (encoded frame, map of encoded column -> feature name)
    """
    features = list(features) if features is not None else schema.feature_names
    cols: "OrderedDict[str, np.ndarray]" = OrderedDict()
    origin: Dict[str, str] = {}

    for name in features:
        s = df[name]
        if schema.type_of(name) != "nominal":
            cols[name] = s.astype(float).to_numpy()
            origin[name] = name
            continue
        levels = schema.levels_of(name)
        if one_hot:
            for lvl, col in zip(levels[1:], _factor_columns(schema, name)):
                cols[col] = (s == lvl).astype(float).to_numpy()
                origin[col] = name
        else:
            codes = {lvl: i for i, lvl in enumerate(levels)}
            cols[name] = s.map(codes).astype(float).to_numpy()
            origin[name] = name

    return pd.DataFrame(cols, index=df.index), origin


# ---------------------------
# Imputation adapter
# ---------------------------


def _pmm_draw(
    draws: np.ndarray, observed: np.ndarray, rng: np.random.RandomState
) -> np.ndarray:
    """Replace each draw with one of its nearest observed donors."""
    k = min(PMM_DONORS, len(observed))
    dist = np.abs(draws[:, None] - observed[None, :])
    nearest = np.argpartition(dist, k - 1, axis=1)[:, :k]
    pick = rng.randint(0, k, size=len(draws))
    return observed[nearest[np.arange(len(draws)), pick]]


def impute(
    df: pd.DataFrame,
    schema: FeatureSchema,
    imputation_count: int = IMPUTATION_COUNT_DEFAULT,
    method: str = "pmm",
    max_iterations: int = IMPUTATION_MAX_ITER,
    seed: int = RANDOM_STATE,
    audit: Optional[AuditLog] = None,
) -> List[pd.DataFrame]:
    """
    Produce M completed copies of the dataset by chained equations.

    Each imputation m fits IterativeImputer(sample_posterior=True) with seed
    seed + m. Outcome and treatment indicators enter as predictors and are
    never imputed. Nominal features are imputed on their level codes.

    Methods:
        pmm:  each imputed cell takes the observed value of one of the
              PMM_DONORS observed cells closest to the posterior draw
        norm: the posterior draw itself, rounded and clipped for binary and
              nominal features

    Reference:
    - White IR, et al. Multiple imputation using chained equations: issues
      and guidance for practice. Statistics in Medicine 2011;30(4):377-99.
    """
    if method not in ("pmm", "norm"):
        raise ValueError(f"Unknown imputation method: {method}")
    if imputation_count < 1:
        raise ValueError("imputation_count must be >= 1")

    data = schema.prepare(df)
    features = schema.feature_names
    codes, _ = encode_features(data, schema, features, one_hot=False)
    missing = codes.isnull()
    n_missing = int(missing.to_numpy().sum())

    if n_missing == 0:
        if audit:
            audit.log("IMPUTATION_SKIPPED", {"reason": "no_missing_values"})
        return [data.copy() for _ in range(imputation_count)]

    predictors = [schema.outcome, schema.behavioral, schema.pharmacotherapy]
    matrix = pd.concat([codes, data[predictors].astype(float)], axis=1).to_numpy()

    completed = []
    for m in range(imputation_count):
        rng = np.random.RandomState(seed + m)
        imputer = IterativeImputer(
            max_iter=max_iterations, random_state=seed + m, sample_posterior=True
        )
        filled = imputer.fit_transform(matrix)

        out = data.copy()
        for j, name in enumerate(features):
            miss = missing[name].to_numpy()
            if not miss.any():
                continue
            observed = codes[name].to_numpy()[~miss]
            draws = filled[miss, j]
            ftype = schema.type_of(name)

            if method == "pmm":
                values = _pmm_draw(draws, observed, rng)
            elif ftype == "continuous":
                values = draws
            else:
                values = np.clip(np.rint(draws), observed.min(), observed.max())

            if ftype == "nominal":
                levels = schema.levels_of(name)
                col = out[name].to_numpy(dtype=object)
                col[miss] = [levels[int(v)] for v in values]
                out[name] = col
            else:
                col = out[name].to_numpy(dtype=float)
                col[miss] = values
                out[name] = col
        completed.append(out)

    if audit:
        audit.log(
            "IMPUTATION_DONE",
            {
                "imputation_count": imputation_count,
                "method": method,
                "max_iterations": max_iterations,
                "seed": seed,
                "missing_cells": n_missing,
                "rows_with_missing": int(missing.any(axis=1).sum()),
                "missing_by_feature": {
                    k: int(v) for k, v in missing.sum().items() if v > 0
                },
            },
        )
    return completed


# ---------------------------
# Group partitioner
# ---------------------------


def treatment_group_key(
    df: pd.DataFrame, schema: FeatureSchema, by: Optional[Sequence[str]] = None
) -> pd.Series:
    """Group label per record, e.g. 'behavioral=1|pharmacotherapy=0'."""
    by = list(by) if by else [schema.behavioral, schema.pharmacotherapy]
    parts = [df[c].map(lambda v, c=c: f"{c}={_level_key(v)}") for c in by]
    key = parts[0]
    for p in parts[1:]:
        key = key + "|" + p
    return key


def partition_groups(
    df: pd.DataFrame, schema: FeatureSchema, by: Optional[Sequence[str]] = None
) -> "OrderedDict[str, pd.DataFrame]":
    """
    Split into disjoint subgroups by treatment combination.

    Each subgroup is a fresh frame (row order kept, index reset); the parent
    is not touched.
    """
    key = treatment_group_key(df, schema, by)
    groups: "OrderedDict[str, pd.DataFrame]" = OrderedDict()
    for label in sorted(key.unique()):
        groups[label] = df.loc[(key == label).to_numpy()].reset_index(drop=True)
    return groups


# ---------------------------
# Folding
# ---------------------------

Fold = Tuple[np.ndarray, np.ndarray]


def make_folds(
    y: Sequence[int],
    strategy: str = "leave-one-out",
    n_splits: int = 5,
    seed: int = RANDOM_STATE,
) -> List[Fold]:
    """
    Train/held-out index pairs covering every record exactly once.

    k-fold is stratified on the outcome when the minority class has at least
    n_splits records, plain shuffled k-fold otherwise.
    """
    y = np.asarray(y)
    n = len(y)
    index = np.zeros((n, 1))
    if strategy == "leave-one-out":
        return [(tr, te) for tr, te in LeaveOneOut().split(index)]
    if strategy != "k-fold":
        raise ValueError(f"Unknown folding strategy: {strategy}")
    if n_splits < 2 or n_splits > n:
        raise ValueError(f"n_splits must be in [2, {n}]")
    _, counts = np.unique(y, return_counts=True)
    if len(counts) == 2 and counts.min() >= n_splits:
        splitter = StratifiedKFold(n_splits=n_splits, shuffle=True, random_state=seed)
        return [(tr, te) for tr, te in splitter.split(index, y)]
    splitter = KFold(n_splits=n_splits, shuffle=True, random_state=seed)
    return [(tr, te) for tr, te in splitter.split(index)]


def check_folds(folds: Sequence[Fold], n: int):
    """Raise ValueError unless each record is held out exactly once."""
    held = np.concatenate([np.asarray(te) for _, te in folds]) if folds else np.array([])
    if len(held) != n or not np.array_equal(np.sort(held), np.arange(n)):
        raise ValueError("Folds must hold out every record exactly once")
    for tr, te in folds:
        if np.intersect1d(tr, te).size:
            raise ValueError("Training and held-out indices overlap")


# ---------------------------
# Selection algorithms
# ---------------------------


def penalty_to_C(strength: float, n_samples: int) -> float:
    """
    Convert a glmnet-style penalty strength to sklearn's C.

    glmnet minimises mean loss + lambda * penalty; sklearn minimises
    C * summed loss + penalty, so C = 1 / (n * lambda).
    """
    return 1.0 / (n_samples * strength)


def _penalized_logistic(
    C: float, l1_ratio: float, seed: int, max_iter: int, tol: float
) -> LogisticRegression:
    kwargs = dict(
        C=C,
        l1_ratio=float(l1_ratio),
        solver="saga",
        max_iter=max_iter,
        tol=tol,
        random_state=seed,
    )
    if not _SKLEARN_COMPAT["penalty_param_deprecated"]:
        kwargs["penalty"] = "elasticnet"
    return LogisticRegression(**kwargs)


class SelectionAlgorithm:
    """
    Common contract for the four variable selectors.

    fit(X, y, params) returns the fitted estimator, a coefficient (or
    importance) per encoded column and the selected columns.
    """

    name = "base"
    one_hot = True

    def default_grid(self, n_features: int) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def sparsity_key(self, params: Dict[str, Any]) -> Tuple:
        """Smaller sorts first among tied hyperparameters."""
        return ()

    def build(self, params: Dict[str, Any], seed: int, n_samples: int):
        raise NotImplementedError

    def relax(self, estimator):
        return estimator

    def coefficients(self, estimator, columns: List[str]) -> pd.Series:
        raise NotImplementedError

    def selected_columns(self, coefficients: pd.Series) -> List[str]:
        return [c for c, v in coefficients.items() if v != 0]

    def extras(self, estimator, columns: List[str]) -> Dict[str, Any]:
        return {}

    def decision_scores(self, estimator, X: np.ndarray) -> np.ndarray:
        if hasattr(estimator, "predict_proba"):
            return estimator.predict_proba(X)[:, 1]
        return estimator.decision_function(X)

    def fit(
        self,
        X,
        y,
        params: Dict[str, Any],
        seed: int = RANDOM_STATE,
        columns: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        if columns is None:
            columns = (
                list(X.columns)
                if hasattr(X, "columns")
                else [f"x{i}" for i in range(np.shape(X)[1])]
            )
        X = np.asarray(X, dtype=float)
        y = np.asarray(y).astype(int)
        estimator = _fit_checked(self, self.build(params, seed, len(y)), X, y, params)
        coefs = self.coefficients(estimator, columns)
        out = {
            "estimator": estimator,
            "coefficients": coefs,
            "selected_columns": self.selected_columns(coefs),
        }
        out.update(self.extras(estimator, columns))
        return out


class LassoSelector(SelectionAlgorithm):
    """L1-penalized logistic regression on standardized features."""

    name = "lasso"

    def __init__(
        self,
        lambda_grid: Optional[Sequence[float]] = None,
        max_iter: int = LOGISTIC_MAX_ITER,
        tol: float = LOGISTIC_TOL,
    ):
        self.lambda_grid = np.asarray(
            LAMBDA_GRID if lambda_grid is None else lambda_grid, dtype=float
        )
        self.max_iter = max_iter
        self.tol = tol

    def default_grid(self, n_features: int) -> List[Dict[str, Any]]:
        return [{"lambda": float(lam)} for lam in self.lambda_grid]

    def sparsity_key(self, params: Dict[str, Any]) -> Tuple:
        return (-params["lambda"],)

    def _l1_ratio(self, params: Dict[str, Any]) -> float:
        return 1.0

    def build(self, params: Dict[str, Any], seed: int, n_samples: int):
        clf = _penalized_logistic(
            penalty_to_C(params["lambda"], n_samples),
            self._l1_ratio(params),
            seed,
            self.max_iter,
            self.tol,
        )
        return Pipeline([("scale", StandardScaler()), ("clf", clf)])

    def relax(self, estimator):
        clf = estimator.named_steps["clf"]
        return estimator.set_params(
            clf__tol=clf.tol * CONVERGENCE_RELAX_TOL,
            clf__max_iter=clf.max_iter * CONVERGENCE_RELAX_ITER,
        )

    def coefficients(self, estimator, columns: List[str]) -> pd.Series:
        return pd.Series(estimator.named_steps["clf"].coef_[0], index=columns)


class ElasticNetSelector(LassoSelector):
    """
    Blended L1/L2 logistic regression.

    At l1_ratio == 1 the estimator is built exactly as LassoSelector builds it.
    """

    name = "elastic_net"

    def __init__(
        self,
        lambda_grid: Optional[Sequence[float]] = None,
        l1_ratio_grid: Optional[Sequence[float]] = None,
        max_iter: int = LOGISTIC_MAX_ITER,
        tol: float = LOGISTIC_TOL,
    ):
        super().__init__(lambda_grid=lambda_grid, max_iter=max_iter, tol=tol)
        self.l1_ratio_grid = np.asarray(
            L1_RATIO_GRID if l1_ratio_grid is None else l1_ratio_grid, dtype=float
        )
        if ((self.l1_ratio_grid < 0) | (self.l1_ratio_grid > 1)).any():
            raise ValueError("l1_ratio values must lie in [0, 1]")

    def default_grid(self, n_features: int) -> List[Dict[str, Any]]:
        return [
            {"l1_ratio": float(r), "lambda": float(lam)}
            for r in self.l1_ratio_grid
            for lam in self.lambda_grid
        ]

    def sparsity_key(self, params: Dict[str, Any]) -> Tuple:
        return (-params["lambda"], -params["l1_ratio"])

    def _l1_ratio(self, params: Dict[str, Any]) -> float:
        return params["l1_ratio"]


class ForestImportanceSelector(SelectionAlgorithm):
    """
    Random forest impurity importances.

    Importances are reported for every feature; the selected set holds the
    features whose importance reaches importance_threshold ("mean",
    "median" or a number).
    """

    name = "random_forest"
    one_hot = False

    def __init__(
        self,
        n_estimators: int = RF_ESTIMATORS,
        max_features_grid: Optional[Sequence[int]] = None,
        importance_threshold: Union[str, float] = "mean",
    ):
        self.n_estimators = int(n_estimators)
        self.max_features_grid = max_features_grid
        self.importance_threshold = importance_threshold

    def default_grid(self, n_features: int) -> List[Dict[str, Any]]:
        values = self.max_features_grid or [round(math.sqrt(n_features))]
        sizes = sorted({max(1, min(int(v), n_features)) for v in values})
        return [{"max_features": s} for s in sizes]

    def sparsity_key(self, params: Dict[str, Any]) -> Tuple:
        return (params["max_features"],)

    def build(self, params: Dict[str, Any], seed: int, n_samples: int):
        return RandomForestClassifier(
            n_estimators=self.n_estimators,
            max_features=params["max_features"],
            random_state=seed,
            n_jobs=1,
        )

    def coefficients(self, estimator, columns: List[str]) -> pd.Series:
        return pd.Series(estimator.feature_importances_, index=columns)

    def selected_columns(self, coefficients: pd.Series) -> List[str]:
        thr = self.importance_threshold
        if thr == "mean":
            cut = float(coefficients.mean())
        elif thr == "median":
            cut = float(coefficients.median())
        else:
            cut = float(thr)
        return [c for c, v in coefficients.items() if v > 0 and v >= cut]


class SvmRfeSelector(SelectionAlgorithm):
    """
    Recursive feature elimination with a linear SVM.

    The subset size is the hyperparameter: each candidate size is scored
    by the same cross-validation harness as the other selectors.
    """

    name = "svm_rfe"

    def __init__(
        self,
        subset_sizes: Sequence[int] = RFE_SUBSET_SIZES,
        C: float = 1.0,
        max_iter: int = SVM_MAX_ITER,
    ):
        self.subset_sizes = list(subset_sizes)
        self.C = C
        self.max_iter = max_iter

    def default_grid(self, n_features: int) -> List[Dict[str, Any]]:
        sizes = sorted({max(1, min(int(s), n_features)) for s in self.subset_sizes})
        return [{"n_features": s} for s in sizes]

    def sparsity_key(self, params: Dict[str, Any]) -> Tuple:
        return (params["n_features"],)

    def build(self, params: Dict[str, Any], seed: int, n_samples: int):
        svm = LinearSVC(
            C=self.C, dual=False, max_iter=self.max_iter, random_state=seed
        )
        rfe = RFE(svm, n_features_to_select=params["n_features"], step=1)
        return Pipeline([("scale", StandardScaler()), ("rfe", rfe)])

    def relax(self, estimator):
        svm = estimator.named_steps["rfe"].estimator
        return estimator.set_params(
            rfe__estimator__tol=svm.tol * CONVERGENCE_RELAX_TOL,
            rfe__estimator__max_iter=svm.max_iter * CONVERGENCE_RELAX_ITER,
        )

    def coefficients(self, estimator, columns: List[str]) -> pd.Series:
        rfe = estimator.named_steps["rfe"]
        coefs = np.zeros(len(columns))
        coefs[rfe.support_] = rfe.estimator_.coef_[0]
        return pd.Series(coefs, index=columns)

    def extras(self, estimator, columns: List[str]) -> Dict[str, Any]:
        rfe = estimator.named_steps["rfe"]
        return {"ranking": pd.Series(rfe.ranking_, index=columns)}


ALGORITHMS = OrderedDict(
    [
        ("lasso", LassoSelector),
        ("elastic_net", ElasticNetSelector),
        ("random_forest", ForestImportanceSelector),
        ("svm_rfe", SvmRfeSelector),
    ]
)
ALGORITHM_ORDER = tuple(ALGORITHMS)


def get_algorithm(name: str, **kwargs) -> SelectionAlgorithm:
    if name not in ALGORITHMS:
        raise ValueError(f"Unknown selection algorithm: {name}")
    return ALGORITHMS[name](**kwargs)


def algorithms_from_settings(settings: Dict[str, Any]) -> List[SelectionAlgorithm]:
    built = []
    for name in settings["algorithms"]:
        if name == "lasso":
            built.append(LassoSelector(lambda_grid=settings["lambda_grid"]))
        elif name == "elastic_net":
            built.append(
                ElasticNetSelector(
                    lambda_grid=settings["lambda_grid"],
                    l1_ratio_grid=settings["l1_ratio_grid"],
                )
            )
        elif name == "random_forest":
            built.append(
                ForestImportanceSelector(
                    n_estimators=settings["rf_estimators"],
                    max_features_grid=settings["rf_max_features"],
                    importance_threshold=settings["importance_threshold"],
                )
            )
        else:
            built.append(SvmRfeSelector(subset_sizes=settings["rfe_sizes"]))
    return built


# ---------------------------
# Cross-validated selector harness
# ---------------------------


def _fit_checked(algorithm: SelectionAlgorithm, estimator, X, y, params):
    """Fit; on a convergence warning retry once relaxed, then raise."""
    for attempt in range(2):
        with warnings.catch_warnings():
            warnings.simplefilter("error", category=ConvergenceWarning)
            try:
                return estimator.fit(X, y)
            except ConvergenceWarning:
                if attempt == 0:
                    estimator = algorithm.relax(estimator)
    raise NonConvergenceError(
        f"Optimizer did not converge for {params} after a relaxed retry",
        algorithm=algorithm.name,
    )


def _evaluate_fold(algorithm, X, y, columns, params, param_index, train_idx, test_idx, seed):
    estimator = _fit_checked(
        algorithm,
        algorithm.build(params, seed, len(train_idx)),
        X[train_idx],
        y[train_idx],
        params,
    )
    pred = estimator.predict(X[test_idx])
    score = algorithm.decision_scores(estimator, X[test_idx])
    n_selected = len(algorithm.selected_columns(algorithm.coefficients(estimator, columns)))
    return param_index, test_idx, pred, score, n_selected


def _safe_auc(y: np.ndarray, scores: np.ndarray) -> float:
    if np.unique(y).size < 2 or not np.all(np.isfinite(scores)):
        return float("nan")
    return float(roc_auc_score(y, scores))


def _choose_best(
    grid_scores: pd.DataFrame,
    metric: str,
    grid: List[Dict[str, Any]],
    algorithm: SelectionAlgorithm,
    tie_break: str,
) -> int:
    values = grid_scores[metric].to_numpy(dtype=float)
    values = np.where(np.isnan(values), -np.inf, values)
    top = values.max()
    tied = [i for i, v in enumerate(values) if v >= top - SCORE_TIE_ATOL]
    if tie_break == "first":
        return tied[0]
    return min(
        tied,
        key=lambda i: (
            grid_scores["mean_selected"].iloc[i],
            algorithm.sparsity_key(grid[i]),
            i,
        ),
    )


def _features_from_columns(columns: List[str], origin: Dict[str, str]) -> List[str]:
    out: List[str] = []
    for c in columns:
        name = origin.get(c, c)
        if name not in out:
            out.append(name)
    return out


def evaluate(
    algorithm: Union[str, SelectionAlgorithm],
    X,
    y,
    param_grid: Optional[Sequence[Dict[str, Any]]] = None,
    folds: Optional[Sequence[Fold]] = None,
    *,
    folding: str = "leave-one-out",
    n_splits: int = 5,
    scoring: str = "accuracy",
    tie_break: str = "sparsest",
    feature_origin: Optional[Dict[str, str]] = None,
    n_jobs: int = 1,
    seed: int = RANDOM_STATE,
    group: Optional[str] = None,
    imputation: Optional[int] = None,
    audit: Optional[AuditLog] = None,
) -> Dict[str, Any]:
    """
    Cross-validate a selector over its hyperparameter grid.

    Every grid tuple is trained on every fold's training partition and
    predicts the fold's held-out records, giving one out-of-fold label and
    score per record. The tuple with the best scoring metric is refit on all
    records to give the final coefficients and selected set.

    Ties on the metric follow tie_break:
        sparsest: fewest selected features (mean over folds), then the
                  algorithm's sparsity order, then grid order
        first:    grid order

    Raises:
        InsufficientDataError: a training partition lacks an outcome class,
            or there are fewer records than k-fold splits
        NonConvergenceError: a fit failed to converge after a relaxed retry

    Returns:
        SelectionResult dictionary
    """
    if isinstance(algorithm, str):
        algorithm = get_algorithm(algorithm)
    if scoring not in SCORING_COLUMNS:
        raise ValueError(f"Unknown scoring metric: {scoring}")
    if tie_break not in ("sparsest", "first"):
        raise ValueError(f"Unknown tie-break policy: {tie_break}")

    columns = (
        list(X.columns) if hasattr(X, "columns") else [f"x{i}" for i in range(np.shape(X)[1])]
    )
    X_arr = np.asarray(X, dtype=float)
    y_arr = np.asarray(y).astype(int)
    if X_arr.shape[0] != len(y_arr):
        raise ValueError("Feature matrix and labels differ in length")
    if not set(np.unique(y_arr)) <= {0, 1}:
        raise ValueError("Labels must be coded 0/1")
    ctx = {"group": group, "algorithm": algorithm.name, "imputation": imputation}

    if np.unique(y_arr).size < 2:
        raise InsufficientDataError("Outcome has a single class", **ctx)
    if folds is None:
        if folding == "k-fold" and len(y_arr) < n_splits:
            raise InsufficientDataError(
                f"{len(y_arr)} records cannot fill {n_splits} folds", **ctx
            )
        folds = make_folds(y_arr, folding, n_splits, seed)
    folds = list(folds)
    check_folds(folds, len(y_arr))
    for train_idx, test_idx in folds:
        if np.unique(y_arr[train_idx]).size < 2:
            raise InsufficientDataError(
                f"Training partition holding out records {list(test_idx)[:5]} "
                "lacks one outcome class",
                **ctx,
            )

    grid = list(param_grid) if param_grid is not None else algorithm.default_grid(X_arr.shape[1])
    if not grid:
        raise ValueError("Empty hyperparameter grid")

    try:
        outputs = Parallel(n_jobs=n_jobs)(
            delayed(_evaluate_fold)(
                algorithm, X_arr, y_arr, columns, params, pi, tr, te, seed
            )
            for pi, params in enumerate(grid)
            for tr, te in folds
        )
    except ModeraError as err:
        raise err.with_context(**ctx) from err

    n = len(y_arr)
    preds = np.full((len(grid), n), -1, dtype=int)
    scores = np.full((len(grid), n), np.nan)
    n_selected: List[List[int]] = [[] for _ in grid]
    for pi, test_idx, pred, score, k in outputs:
        preds[pi, test_idx] = pred
        scores[pi, test_idx] = score
        n_selected[pi].append(k)

    rows = []
    for pi, params in enumerate(grid):
        rows.append(
            {
                "param_index": pi,
                **params,
                "accuracy": float(np.mean(preds[pi] == y_arr)),
                "auc": _safe_auc(y_arr, scores[pi]),
                "mean_selected": float(np.mean(n_selected[pi])),
            }
        )
    grid_scores = pd.DataFrame(rows)
    metric = SCORING_COLUMNS[scoring]
    best = _choose_best(grid_scores, metric, grid, algorithm, tie_break)

    try:
        final = algorithm.fit(X_arr, y_arr, grid[best], seed=seed, columns=columns)
    except ModeraError as err:
        raise err.with_context(**ctx) from err

    origin = feature_origin or {c: c for c in columns}
    selected = _features_from_columns(final["selected_columns"], origin)
    result = {
        "status": "ok",
        "algorithm": algorithm.name,
        "group": group,
        "imputation": imputation,
        "best_params": dict(grid[best]),
        "scoring": scoring,
        "score": float(grid_scores[metric].iloc[best]),
        "accuracy": float(grid_scores["accuracy"].iloc[best]),
        "auc": float(grid_scores["auc"].iloc[best]),
        "grid_scores": grid_scores,
        "held_out": np.concatenate([np.asarray(te) for _, te in folds]),
        "oof_pred": preds[best].copy(),
        "oof_score": scores[best].copy(),
        "n_folds": len(folds),
        "coefficients": final["coefficients"],
        "selected_columns": list(final["selected_columns"]),
        "selected": selected,
        "n_selected": len(selected),
        "feature_origin": dict(origin),
    }
    if "ranking" in final:
        result["ranking"] = final["ranking"]

    if audit:
        audit.log(
            "SELECTION_EVALUATED",
            {
                **ctx,
                "best_params": result["best_params"],
                "score": result["score"],
                "auc": result["auc"],
                "n_selected": result["n_selected"],
                "n_folds": len(folds),
                "grid_size": len(grid),
            },
        )
    return result


# ---------------------------
# Pooling across imputations
# ---------------------------


def pool_rubin(estimates: Sequence[float], variances: Sequence[float]) -> Dict[str, float]:
    """
    Combine M point estimates by Rubin's rules.

    Q-bar = mean estimate, U-bar = mean within-imputation variance,
    B = between-imputation variance, T = U-bar + (1 + 1/M) B.
    Degrees of freedom follow Rubin (1987): (M - 1)(1 + 1/r)^2 with
    r = (1 + 1/M) B / U-bar.
    """
    q = np.asarray(estimates, dtype=float)
    u = np.asarray(variances, dtype=float)
    m = len(q)
    if m == 0:
        raise ValueError("No estimates to pool")
    qbar = float(q.mean())
    ubar = float(u.mean())
    b = float(q.var(ddof=1)) if m > 1 else 0.0
    between = (1.0 + 1.0 / m) * b
    total = ubar + between

    if b <= 0:
        riv, dof = 0.0, math.inf
    elif ubar <= 0:
        riv, dof = math.inf, float(m - 1)
    else:
        riv = between / ubar
        dof = (m - 1) * (1.0 + 1.0 / riv) ** 2

    return {
        "estimate": qbar,
        "within_var": ubar,
        "between_var": b,
        "total_var": total,
        "se": math.sqrt(total),
        "df": dof,
        "riv": riv,
        "fmi": between / total if total > 0 else 0.0,
        "m": m,
    }


def pool_selection_results(
    results: Sequence[Dict[str, Any]], policy: str = "majority"
) -> Dict[str, Any]:
    """
    Pool one (group, algorithm) unit across imputations.

    Scores and coefficients are averaged. The selected set follows policy:
    majority (selected in more than half the imputations), union,
    intersection, or first (imputation 0 only).
    """
    ok = [r for r in results if r.get("status") == "ok"]
    if not ok:
        raise AggregationError("No successful imputation to pool")
    ok = sorted(ok, key=lambda r: (r.get("imputation") is None, r.get("imputation") or 0))
    if policy == "first":
        pooled = dict(ok[0])
        pooled.update(
            {
                "pooling": "first",
                "n_imputations": 1,
                "imputations": [ok[0].get("imputation")],
                "selection_frequency": pd.Series(1.0, index=ok[0]["selected"], dtype=float),
            }
        )
        return pooled
    if policy not in ("majority", "union", "intersection"):
        raise ValueError(f"Unknown pooling policy: {policy}")

    m = len(ok)
    counts = Counter(f for r in ok for f in r["selected"])
    order: List[str] = []
    for r in ok:
        for f in r["feature_origin"].values():
            if f not in order:
                order.append(f)
    freq = pd.Series({f: counts.get(f, 0) / m for f in order}, dtype=float)

    if policy == "majority":
        keep = freq[freq > 0.5]
    elif policy == "union":
        keep = freq[freq > 0]
    else:
        keep = freq[freq >= 1.0]
    selected = list(keep.sort_values(ascending=False, kind="stable").index)

    aucs = [r["auc"] for r in ok if np.isfinite(r["auc"])]
    pooled = {
        "status": "ok",
        "algorithm": ok[0]["algorithm"],
        "group": ok[0]["group"],
        "imputation": None,
        "imputations": [r.get("imputation") for r in ok],
        "n_imputations": m,
        "pooling": policy,
        "scoring": ok[0]["scoring"],
        "best_params": [r["best_params"] for r in ok],
        "score": float(np.mean([r["score"] for r in ok])),
        "accuracy": float(np.mean([r["accuracy"] for r in ok])),
        "auc": float(np.mean(aucs)) if aucs else float("nan"),
        "coefficients": pd.concat([r["coefficients"] for r in ok], axis=1).mean(axis=1),
        "selected": selected,
        "n_selected": len(selected),
        "selection_frequency": freq,
        "feature_origin": dict(ok[0]["feature_origin"]),
    }
    return pooled


# ---------------------------
# Cross-group aggregator
# ---------------------------


def _algorithm_rank(name: str) -> int:
    return ALGORITHM_ORDER.index(name) if name in ALGORITHM_ORDER else len(ALGORITHM_ORDER)


def rank_methods(per_group_results: Dict[str, Dict[str, Dict[str, Any]]]) -> pd.DataFrame:
    """Long table of validation scores ranked within each group."""
    rows = []
    for group, by_algo in per_group_results.items():
        for algo, res in by_algo.items():
            ok = res.get("status") == "ok"
            rows.append(
                {
                    "group": group,
                    "algorithm": algo,
                    "status": res.get("status", "failed"),
                    "score": res["score"] if ok else np.nan,
                    "auc": res.get("auc", np.nan) if ok else np.nan,
                    "n_selected": res["n_selected"] if ok else np.nan,
                    "error": None if ok else res.get("message"),
                }
            )
    table = pd.DataFrame(
        rows,
        columns=["group", "algorithm", "status", "score", "auc", "n_selected", "error"],
    )
    if not table.empty:
        table["rank"] = table.groupby("group")["score"].rank(ascending=False, method="min")
    return table


def aggregate(
    per_group_results: Dict[str, Dict[str, Dict[str, Any]]],
    strict: bool = True,
    audit: Optional[AuditLog] = None,
) -> Dict[str, Any]:
    """
    Choose each group's best selector and combine the selected sets.

    Best = strictly highest validation score; ties go to fewer selected
    features, then to ALGORITHM_ORDER. Union and intersection are taken over
    the best selectors' sets, unmodified.

    A group where every selector failed is listed in failed_groups; with
    strict=True that raises AggregationError.
    """
    best_method: "OrderedDict[str, str]" = OrderedDict()
    best_result: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()
    failed: Dict[str, List[str]] = {}

    for group, by_algo in per_group_results.items():
        candidates = [(a, r) for a, r in by_algo.items() if r.get("status") == "ok"]
        if not candidates:
            failed[group] = [
                f"{a}: {r.get('error_type', 'Error')}: {r.get('message', '')}"
                for a, r in by_algo.items()
            ]
            continue
        algo, res = min(
            candidates,
            key=lambda item: (
                -round(item[1]["score"], 12),
                item[1]["n_selected"],
                _algorithm_rank(item[0]),
            ),
        )
        best_method[group] = algo
        best_result[group] = res

    if audit:
        audit.log(
            "AGGREGATION",
            {
                "best_method": dict(best_method),
                "failed_groups": failed,
            },
        )
    if failed and strict:
        raise AggregationError(
            f"All selection algorithms failed for group(s) {sorted(failed)}: "
            + "; ".join(msg for msgs in failed.values() for msg in msgs),
            group=",".join(sorted(failed)),
        )
    if not best_result:
        raise AggregationError("No group produced a usable selection")

    sets = [set(r["selected"]) for r in best_result.values()]
    union = sorted(set().union(*sets))
    intersection = sorted(set.intersection(*sets))

    ranking = rank_methods(per_group_results)
    matrix = ranking.pivot(index="group", columns="algorithm", values="score")
    matrix = matrix.reindex(
        columns=sorted(matrix.columns, key=_algorithm_rank)
    )

    return {
        "best_method": best_method,
        "best_result": best_result,
        "union": union,
        "intersection": intersection,
        "accuracy_matrix": matrix,
        "ranking": ranking,
        "failed_groups": failed,
    }


# ---------------------------
# Moderation model fitter
# ---------------------------


def build_terms(
    schema: FeatureSchema,
    treatment: str,
    moderators: Sequence[str],
    higher_order: Sequence[Sequence[str]] = (),
) -> "OrderedDict[str, Dict[str, Any]]":
    """
    Ordered term scope of a moderation model.

    treatment, moderator main effects, treatment x moderator interactions,
    then for each requested pair (mi, mj) the mi:mj term and the
    treatment:mi:mj term. A nominal factor contributes all of its indicator
    columns to every term it appears in.
    """
    factor_cols = {treatment: [treatment]}
    for m in moderators:
        if m not in schema.features:
            raise SchemaError(f"Moderator '{m}' is not a declared feature")
        factor_cols[m] = _factor_columns(schema, m)

    terms: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()

    def add(parts: Tuple[str, ...]):
        name = ":".join(parts)
        if name in terms:
            return
        components = list(itertools.product(*(factor_cols[p] for p in parts)))
        terms[name] = {
            "parts": tuple(parts),
            "components": components,
            "columns": [":".join(c) for c in components],
        }

    add((treatment,))
    for m in moderators:
        add((m,))
    for m in moderators:
        add((treatment, m))
    for pair in higher_order:
        pair = tuple(pair)
        if len(pair) != 2 or pair[0] == pair[1]:
            raise ValueError(f"Higher-order term needs two distinct moderators: {pair}")
        if not set(pair) <= set(moderators):
            raise ValueError(f"Higher-order pair {pair} not among moderators")
        add(pair)
        add((treatment,) + pair)
    return terms


def build_design(
    df: pd.DataFrame,
    schema: FeatureSchema,
    treatment: str,
    terms: Dict[str, Dict[str, Any]],
) -> pd.DataFrame:
    moderators = [
        t["parts"][0]
        for t in terms.values()
        if len(t["parts"]) == 1 and t["parts"][0] != treatment
    ]
    base, _ = encode_features(df, schema, moderators, one_hot=True)
    base[treatment] = df[treatment].astype(float).to_numpy()
    cols: "OrderedDict[str, np.ndarray]" = OrderedDict()
    for term in terms.values():
        for comp, col in zip(term["components"], term["columns"]):
            values = np.ones(len(df))
            for c in comp:
                values = values * base[c].to_numpy()
            cols[col] = values
    return pd.DataFrame(cols, index=df.index)


def _fit_glm(y: np.ndarray, design: pd.DataFrame, columns: List[str]):
    X = design[columns].copy()
    X.insert(0, "Intercept", 1.0)
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        try:
            result = sm.GLM(y, X, family=sm.families.Binomial()).fit(maxiter=GLM_MAX_ITER)
        except PerfectSeparationError as exc:
            raise SeparationError(f"Perfect separation while fitting: {exc}") from exc
    warned = any(issubclass(w.category, PerfectSeparationWarning) for w in caught)
    return result, warned


def _separated_columns(result, warned: bool) -> List[str]:
    flagged = []
    for col in result.params.index:
        if col == "Intercept":
            continue
        coef, se = float(result.params[col]), float(result.bse[col])
        if not (np.isfinite(coef) and np.isfinite(se)):
            flagged.append(col)
        elif se > SEPARATION_SE_LIMIT:
            flagged.append(col)
        elif abs(coef) > SEPARATION_COEF_LIMIT and (warned or se > SEPARATION_SE_RATIO * abs(coef)):
            flagged.append(col)
    return flagged


def _fit_terms(y, design, terms, selected):
    """Fit the GLM for a term list; returns (result, separated terms)."""
    columns = [c for t in selected for c in terms[t]["columns"]]
    result, warned = _fit_glm(y, design, columns)
    col_term = {c: t for t in selected for c in terms[t]["columns"]}
    separated: List[Optional[str]] = []
    for col in _separated_columns(result, warned):
        if col_term[col] not in separated:
            separated.append(col_term[col])
    if warned and not separated:
        separated.append(None)
    if not separated and not getattr(result, "converged", True):
        raise NonConvergenceError(
            f"GLM did not converge within {GLM_MAX_ITER} iterations"
        )
    return result, separated


def information_criterion(result, criterion: str, n: int) -> float:
    k = len(result.params)
    penalty = 2.0 if criterion == "aic" else math.log(n)
    return float(-2.0 * result.llf + penalty * k)


def _removable(term: str, current: List[str], terms, lower_scope) -> bool:
    if term in lower_scope:
        return False
    parts = set(terms[term]["parts"])
    return not any(parts < set(terms[u]["parts"]) for u in current if u != term)


def _addable(term: str, current: List[str], scope: List[str], terms) -> bool:
    parts = set(terms[term]["parts"])
    return all(s in current for s in scope if set(terms[s]["parts"]) < parts)


def stepwise_select(
    y: np.ndarray,
    design: pd.DataFrame,
    terms: Dict[str, Dict[str, Any]],
    start: Sequence[str],
    scope: Sequence[str],
    criterion: str = "aic",
    direction: str = "both",
    lower_scope: Sequence[str] = (),
) -> Tuple[List[str], Any, float, List[Dict[str, Any]]]:
    """
    Stepwise term search by information criterion.

    Each step fits every eligible single removal and addition (marginality
    respected both ways) and applies the move with the lowest criterion.
    The search stops when no move lowers the criterion by more than
    STEPWISE_TOL. Equal criteria prefer removal over addition, then scope
    order. Candidate models that separate are skipped.
    """
    scope = list(scope)
    n = len(y)
    current = [t for t in scope if t in start]
    result, separated = _fit_terms(y, design, terms, current)
    if separated:
        raise SeparationError(
            "Starting model shows separation", term=separated[0]
        )
    score = information_criterion(result, criterion, n)
    history = [{"step": 0, "action": "start", "term": None, "score": score}]

    for step in range(1, STEPWISE_MAX_STEPS + 1):
        moves = []
        if direction in ("both", "backward"):
            moves += [("remove", t) for t in current if _removable(t, current, terms, lower_scope)]
        if direction in ("both", "forward"):
            moves += [
                ("add", t)
                for t in scope
                if t not in current and _addable(t, current, scope, terms)
            ]

        evaluated = []
        for action, term in moves:
            trial = [
                s
                for s in scope
                if (s in current and s != term) or (action == "add" and s == term)
            ]
            try:
                trial_result, trial_sep = _fit_terms(y, design, terms, trial)
            except (SeparationError, NonConvergenceError):
                trial_sep = [term]
            if trial_sep:
                history.append(
                    {"step": step, "action": f"skip_{action}", "term": term, "score": np.nan}
                )
                continue
            evaluated.append(
                (
                    information_criterion(trial_result, criterion, n),
                    0 if action == "remove" else 1,
                    scope.index(term),
                    action,
                    term,
                    trial,
                    trial_result,
                )
            )

        if not evaluated:
            break
        best = min(evaluated, key=lambda e: e[:3])
        if best[0] >= score - STEPWISE_TOL:
            break
        score, _, _, action, term, current, result = best
        history.append({"step": step, "action": action, "term": term, "score": score})
    else:
        raise NonConvergenceError(
            f"Stepwise search did not settle within {STEPWISE_MAX_STEPS} steps"
        )

    return current, result, score, history


def term_table(result, terms: Dict[str, Dict[str, Any]], selected: Sequence[str]) -> pd.DataFrame:
    """Coefficients, Wald CIs and odds ratios for a fitted moderation GLM."""
    col_term = {"Intercept": "Intercept"}
    for t in selected:
        for c in terms[t]["columns"]:
            col_term[c] = t
    ci = result.conf_int(alpha=1.0 - CONFIDENCE_LEVEL)
    rows = []
    with np.errstate(over="ignore"):
        for col in result.params.index:
            coef = float(result.params[col])
            rows.append(
                {
                    "term": col_term[col],
                    "column": col,
                    "coef": coef,
                    "se": float(result.bse[col]),
                    "z": float(result.tvalues[col]),
                    "p_value": float(result.pvalues[col]),
                    "odds_ratio": float(np.exp(coef)),
                    "ci_low": float(np.exp(ci.loc[col, 0])),
                    "ci_high": float(np.exp(ci.loc[col, 1])),
                }
            )
    return pd.DataFrame(rows)


def fit_moderation_model(
    df: pd.DataFrame,
    schema: FeatureSchema,
    moderators: Sequence[str],
    *,
    outcome: Optional[str] = None,
    treatment: Optional[str] = None,
    higher_order: Sequence[Sequence[str]] = (),
    criterion: str = "aic",
    direction: str = "both",
    on_separation: str = "drop",
    lower_scope: Sequence[str] = (),
    start_terms: Optional[Sequence[str]] = None,
    group: Optional[str] = None,
    imputation: Optional[int] = None,
    audit: Optional[AuditLog] = None,
) -> Dict[str, Any]:
    """
    Logistic moderation model with stepwise term selection.

    The full model holds the treatment main effect, each moderator's main
    effect, one treatment x moderator interaction per moderator and the
    requested three-way terms. Separation in the full model is handled by
    on_separation: "abort" raises SeparationError naming the term, "drop"
    removes the term (and every term containing it) and records it in
    ``flagged``. Stepwise search then starts from start_terms (default: the
    full model; the lower scope for direction="forward"). direction="none"
    fits start_terms as given.

    Returns:
        ModerationModel dictionary
    """
    if criterion not in ("aic", "bic"):
        raise ValueError(f"Unknown criterion: {criterion}")
    if direction not in ("both", "backward", "forward", "none"):
        raise ValueError(f"Unknown stepwise direction: {direction}")
    if on_separation not in ("drop", "abort"):
        raise ValueError(f"Unknown separation policy: {on_separation}")

    outcome = outcome or schema.outcome
    treatment = treatment or schema.behavioral
    moderators = list(moderators)
    ctx = {"group": group, "imputation": imputation}

    needed = [outcome, treatment] + moderators
    if df[needed].isnull().any().any():
        raise SchemaError("Moderation model needs complete data; impute first", **ctx)
    y = df[outcome].astype(float).to_numpy()
    if np.unique(y).size < 2:
        raise InsufficientDataError("Outcome has a single class", **ctx)

    terms = build_terms(schema, treatment, moderators, higher_order)
    design = build_design(df, schema, treatment, terms)
    all_terms = list(terms)
    scope = list(all_terms)
    lower = [t for t in lower_scope if t in terms]
    flagged: List[str] = []

    while True:
        try:
            _, separated = _fit_terms(y, design, terms, scope)
        except ModeraError as err:
            raise err.with_context(**ctx) from err
        if not separated:
            break
        term = separated[0]
        if on_separation == "abort" or term is None:
            raise SeparationError(
                "Coefficient diverged (perfect separation)", term=term, **ctx
            )
        dropped = [t for t in scope if set(terms[term]["parts"]) <= set(terms[t]["parts"])]
        scope = [t for t in scope if t not in dropped]
        flagged.append(term)
        if audit:
            audit.log("SEPARATION_TERM_DROPPED", {"term": term, "dropped": dropped, **ctx})
        if not scope:
            raise SeparationError("No estimable terms remain", term=term, **ctx)

    lower = [t for t in lower if t in scope]
    if start_terms is not None:
        start = [t for t in scope if t in set(start_terms)]
    elif direction == "forward":
        start = list(lower)
    else:
        start = list(scope)

    try:
        if direction == "none":
            selected = start
            result, separated = _fit_terms(y, design, terms, selected)
            if separated:
                raise SeparationError(
                    "Coefficient diverged (perfect separation)", term=separated[0]
                )
            score = information_criterion(result, criterion, len(y))
            history = [{"step": 0, "action": "fixed", "term": None, "score": score}]
        else:
            selected, result, score, history = stepwise_select(
                y, design, terms, start, scope, criterion, direction, lower
            )
    except ModeraError as err:
        raise err.with_context(**ctx) from err

    model = {
        "outcome": outcome,
        "treatment": treatment,
        "moderators": moderators,
        "terms": list(selected),
        "scope": scope,
        "all_terms": all_terms,
        "term_parts": {t: terms[t]["parts"] for t in all_terms},
        "table": term_table(result, terms, selected),
        "criterion": criterion,
        "score": score,
        "log_likelihood": float(result.llf),
        "n": int(len(y)),
        "history": history,
        "flagged": flagged,
        "direction": direction,
        "group": group,
        "imputation": imputation,
    }
    if audit:
        audit.log(
            "MODERATION_FIT",
            {
                **ctx,
                "treatment": treatment,
                "moderators": moderators,
                "final_terms": model["terms"],
                "criterion": criterion,
                "score": score,
                "flagged": flagged,
                "steps": len(history) - 1,
            },
        )
    return model


def vote_terms(models: Sequence[Dict[str, Any]]) -> List[str]:
    """Terms kept by more than half the models, closed under marginality."""
    m = len(models)
    counts = Counter(t for model in models for t in model["terms"])
    order: List[str] = []
    parts: Dict[str, Tuple[str, ...]] = {}
    for model in models:
        for t in model["all_terms"]:
            if t not in order:
                order.append(t)
        parts.update(model["term_parts"])
    voted = {t for t in order if counts.get(t, 0) > m / 2}
    for t in list(voted):
        voted |= {s for s in order if set(parts[s]) < set(parts[t])}
    return [t for t in order if t in voted]


def pool_moderation_models(models: Sequence[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Pool per-imputation fits of the same term list by Rubin's rules.

    A column missing from some fits (dropped for separation there) is pooled
    over the fits that have it; its row records the count in ``m``.
    """
    if not models:
        raise ValueError("No models to pool")
    order: List[Tuple[str, str]] = []
    for model in models:
        for _, row in model["table"].iterrows():
            key = (row["term"], row["column"])
            if key not in order:
                order.append(key)

    rows = []
    alpha = 1.0 - CONFIDENCE_LEVEL
    with np.errstate(over="ignore"):
        for term, col in order:
            coefs, variances = [], []
            for model in models:
                hit = model["table"][model["table"]["column"] == col]
                if len(hit):
                    coefs.append(float(hit["coef"].iloc[0]))
                    variances.append(float(hit["se"].iloc[0]) ** 2)
            pooled = pool_rubin(coefs, variances)
            se = pooled["se"]
            crit = float(stats.t.ppf(1 - alpha / 2, pooled["df"]))
            est = pooled["estimate"]
            stat = est / se if se > 0 else np.nan
            rows.append(
                {
                    "term": term,
                    "column": col,
                    "coef": est,
                    "se": se,
                    "z": stat,
                    "p_value": float(2 * stats.t.sf(abs(stat), pooled["df"])) if se > 0 else np.nan,
                    "odds_ratio": float(np.exp(est)),
                    "ci_low": float(np.exp(est - crit * se)),
                    "ci_high": float(np.exp(est + crit * se)),
                    "df": pooled["df"],
                    "fmi": pooled["fmi"],
                    "m": pooled["m"],
                }
            )

    base = models[0]
    return {
        "outcome": base["outcome"],
        "treatment": base["treatment"],
        "moderators": base["moderators"],
        "terms": vote_terms(models),
        "scope": base["scope"],
        "all_terms": base["all_terms"],
        "term_parts": base["term_parts"],
        "table": pd.DataFrame(rows),
        "criterion": base["criterion"],
        "score": float(np.mean([m["score"] for m in models])),
        "log_likelihood": float(np.mean([m["log_likelihood"] for m in models])),
        "n": base["n"],
        "history": [m["history"] for m in models],
        "flagged": sorted({t for m in models for t in m["flagged"]}),
        "direction": base["direction"],
        "pooled": True,
        "n_imputations": len(models),
    }


# ---------------------------
# Effect reporter
# ---------------------------


def contingency_table(df: pd.DataFrame, treatment: str, outcome: str) -> np.ndarray:
    """
    2x2 counts: rows treatment (1) / control (0), columns event (1) /
    non-event (0).
    """
    t = df[treatment].astype(int).to_numpy()
    o = df[outcome].astype(int).to_numpy()
    return np.array(
        [
            [int(((t == 1) & (o == 1)).sum()), int(((t == 1) & (o == 0)).sum())],
            [int(((t == 0) & (o == 1)).sum()), int(((t == 0) & (o == 0)).sum())],
        ]
    )


def odds_ratio_from_table(
    table, continuity_correction: Optional[float] = None
) -> Dict[str, Any]:
    """
    Odds ratio (a*d)/(b*c) with Woolf CI and Fisher exact p-value.

    A zero cell raises DegenerateTableError unless continuity_correction is
    given, in which case that amount is added to every cell (Haldane-Anscombe
    with 0.5) and the result is flagged ``corrected``. The correction is
    only applied to tables with a zero cell.
    """
    counts = np.asarray(table, dtype=float)
    if counts.shape != (2, 2):
        raise ValueError("Contingency table must be 2x2")
    if (counts < 0).any():
        raise ValueError("Contingency counts must be non-negative")

    corrected = False
    cells = counts
    if (counts == 0).any():
        if continuity_correction is None:
            raise DegenerateTableError(
                f"Zero cell in 2x2 table {counts.astype(int).tolist()}; odds ratio "
                "undefined without a continuity correction"
            )
        cells = counts + float(continuity_correction)
        corrected = True

    a, b, c, d = cells.ravel()
    odds_ratio = (a * d) / (b * c)
    log_or = math.log(odds_ratio)
    se_log = math.sqrt(1 / a + 1 / b + 1 / c + 1 / d)
    z = float(stats.norm.ppf(1 - (1 - CONFIDENCE_LEVEL) / 2))
    _, p_value = stats.fisher_exact(np.rint(counts).astype(int))

    return {
        "odds_ratio": float(odds_ratio),
        "log_odds_ratio": float(log_or),
        "se_log": float(se_log),
        "ci_low": float(math.exp(log_or - z * se_log)),
        "ci_high": float(math.exp(log_or + z * se_log)),
        "p_value": float(p_value),
        "corrected": corrected,
        "table": counts.astype(int).tolist(),
    }


def unadjusted_odds_ratio(
    df: pd.DataFrame,
    treatment: str,
    outcome: str,
    continuity_correction: Optional[float] = None,
) -> Tuple[float, float]:
    res = odds_ratio_from_table(
        contingency_table(df, treatment, outcome), continuity_correction
    )
    return res["odds_ratio"], res["log_odds_ratio"]


def unadjusted_summary(
    df: pd.DataFrame,
    schema: FeatureSchema,
    treatment: Optional[str] = None,
    by: Optional[str] = None,
    continuity_correction: Optional[float] = None,
    audit: Optional[AuditLog] = None,
) -> pd.DataFrame:
    """
    Unadjusted treatment odds ratios overall and within each arm of ``by``
    (default: behavioral treatment within pharmacotherapy arms).

    Degenerate arms are kept as rows with ``degenerate=True`` and the error
    message, never as a 0 or infinite odds ratio.
    """
    treatment = treatment or schema.behavioral
    by = by or schema.pharmacotherapy
    arms = [("overall", df)] + [
        (label, frame) for label, frame in partition_groups(df, schema, by=[by]).items()
    ]
    rows = []
    for label, frame in arms:
        row = {"arm": label, "treatment": treatment, "n": int(len(frame))}
        try:
            res = odds_ratio_from_table(
                contingency_table(frame, treatment, schema.outcome),
                continuity_correction,
            )
        except DegenerateTableError as err:
            row.update(
                {
                    "odds_ratio": np.nan,
                    "log_odds_ratio": np.nan,
                    "ci_low": np.nan,
                    "ci_high": np.nan,
                    "p_value": np.nan,
                    "corrected": False,
                    "degenerate": True,
                    "error": err.message,
                }
            )
        else:
            row.update({k: v for k, v in res.items() if k not in ("table", "se_log")})
            row.update({"degenerate": False, "error": None})
        rows.append(row)

    table = pd.DataFrame(rows)
    if audit:
        audit.log(
            "UNADJUSTED_ODDS_RATIOS",
            {
                "treatment": treatment,
                "by": by,
                "degenerate_arms": table.loc[table["degenerate"], "arm"].tolist(),
            },
        )
    return table


def adjusted_effects(model: Dict[str, Any]) -> "OrderedDict[str, Dict[str, Any]]":
    """
    Odds-ratio view of the treatment interaction terms of a moderation model.

    direction is "amplifies" when the interaction odds ratio exceeds 1 (the
    treatment effect grows with the moderator), "attenuates" below 1;
    significant means the confidence interval excludes 1.
    """
    treatment = model["treatment"]
    effects: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()
    for _, row in model["table"].iterrows():
        parts = model["term_parts"].get(row["term"], ())
        if len(parts) < 2 or treatment not in parts:
            continue
        odds_ratio = row["odds_ratio"]
        if odds_ratio > 1:
            direction = "amplifies"
        elif odds_ratio < 1:
            direction = "attenuates"
        else:
            direction = "none"
        effects[row["column"]] = {
            "term": row["term"],
            "odds_ratio": float(odds_ratio),
            "ci_low": float(row["ci_low"]),
            "ci_high": float(row["ci_high"]),
            "p_value": float(row["p_value"]),
            "direction": direction,
            "significant": bool(row["ci_low"] > 1 or row["ci_high"] < 1),
        }
    return effects


# ---------------------------
# Pipeline orchestration
# ---------------------------


def _run_selection_unit(
    algorithm: SelectionAlgorithm,
    frame: pd.DataFrame,
    schema: FeatureSchema,
    imputation: int,
    group: str,
    settings: Dict[str, Any],
) -> Dict[str, Any]:
    """One algorithm x group x imputation unit; failures come back as records."""
    try:
        X, origin = encode_features(frame, schema, one_hot=algorithm.one_hot)
        return evaluate(
            algorithm,
            X,
            frame[schema.outcome].to_numpy(),
            folding=settings["folding"],
            n_splits=settings["n_splits"],
            scoring=settings["scoring"],
            tie_break=settings["tie_break"],
            feature_origin=origin,
            n_jobs=1,
            seed=settings["seed"],
            group=group,
            imputation=imputation,
        )
    except ModeraError as err:
        err = err.with_context(group=group, algorithm=algorithm.name, imputation=imputation)
        return {"status": "failed", **err.to_dict()}


def run_moderation_analysis(
    df: pd.DataFrame,
    schema: FeatureSchema,
    session_config: Optional[Dict[str, Any]] = None,
    audit: Optional[AuditLog] = None,
    output_dir: Optional[Path] = None,
) -> Dict[str, Any]:
    """
    Full pipeline: impute, partition, select, aggregate, model, report.

    Selection units (algorithm x group x imputation) are independent and
    run through joblib; aggregation waits for all of them. A failed unit is
    recorded in ``unit_failures`` and left out of aggregation.
    """
    settings = AnalysisSettings.resolve(session_config)
    if audit:
        audit.log("ANALYSIS_START", {"settings": settings, "schema": schema.to_dict()})

    data = schema.prepare(df, audit)
    type_check = verify_column_types(data, schema, audit)
    pooling = settings["selection_pooling"]
    datasets = impute(
        data,
        schema,
        imputation_count=1 if pooling == "first" else int(settings["imputation_count"]),
        method=settings["imputation_method"],
        max_iterations=int(settings["imputation_max_iter"]),
        seed=int(settings["seed"]),
        audit=audit,
    )

    algorithms = algorithms_from_settings(settings)
    units = []
    for m, frame_m in enumerate(datasets):
        for label, frame in partition_groups(frame_m, schema).items():
            for algorithm in algorithms:
                units.append((algorithm, frame, m, label))
    if audit:
        audit.log(
            "SELECTION_UNITS",
            {"n_units": len(units), "n_jobs": settings["n_jobs"]},
        )

    outputs = Parallel(n_jobs=settings["n_jobs"])(
        delayed(_run_selection_unit)(algorithm, frame, schema, m, label, settings)
        for algorithm, frame, m, label in units
    )

    by_unit: "OrderedDict[Tuple[str, str], List[Dict[str, Any]]]" = OrderedDict()
    for (algorithm, _, _, label), out in zip(units, outputs):
        by_unit.setdefault((label, algorithm.name), []).append(out)

    failures = [o for o in outputs if o.get("status") != "ok"]
    for f in failures:
        if audit:
            audit.log("SELECTION_UNIT_FAILED", f)

    per_group: "OrderedDict[str, OrderedDict]" = OrderedDict()
    for (label, algo), outs in by_unit.items():
        slot = per_group.setdefault(label, OrderedDict())
        if any(o.get("status") == "ok" for o in outs):
            slot[algo] = pool_selection_results(outs, pooling)
        else:
            slot[algo] = dict(outs[0])

    aggregation = aggregate(per_group, strict=bool(settings["strict_aggregation"]), audit=audit)

    treatment = settings["moderation_treatment"] or schema.behavioral
    moderation: Dict[str, Optional[Dict[str, Any]]] = OrderedDict()
    effects: Dict[str, Any] = OrderedDict()
    moderation_failures: List[Dict[str, Any]] = []
    for set_name in ("union", "intersection"):
        moderators = aggregation[set_name]
        if not moderators:
            moderation[set_name] = None
            if audit:
                audit.log("MODERATION_SKIPPED", {"set": set_name, "reason": "empty_candidate_set"})
            continue
        pairs = [tuple(p) for p in settings["higher_order"] if set(p) <= set(moderators)]
        fit_kwargs = dict(
            treatment=treatment,
            higher_order=pairs,
            criterion=settings["criterion"],
            on_separation=settings["on_separation"],
            audit=audit,
        )
        try:
            fits = [
                fit_moderation_model(
                    d, schema, moderators, direction=settings["stepwise_direction"],
                    imputation=m, **fit_kwargs
                )
                for m, d in enumerate(datasets)
            ]
            if len(fits) == 1:
                model = fits[0]
            else:
                voted = vote_terms(fits)
                refits = [
                    fit_moderation_model(
                        d, schema, moderators, direction="none", start_terms=voted,
                        imputation=m, **fit_kwargs
                    )
                    for m, d in enumerate(datasets)
                ]
                model = pool_moderation_models(refits)
        except ModeraError as err:
            moderation[set_name] = None
            moderation_failures.append({"set": set_name, **err.to_dict()})
            if audit:
                audit.log("MODERATION_FAILED", {"set": set_name, **err.to_dict()})
            continue
        moderation[set_name] = model
        effects[set_name] = adjusted_effects(model)

    unadjusted = unadjusted_summary(
        data,
        schema,
        continuity_correction=settings["continuity_correction"],
        audit=audit,
    )

    results = {
        "settings": settings,
        "schema": schema.to_dict(),
        "column_type_check": type_check,
        "n_imputations": len(datasets),
        "selection": per_group,
        "unit_failures": pd.DataFrame(
            failures,
            columns=["group", "algorithm", "imputation", "error_type", "message"],
        ),
        "aggregation": aggregation,
        "moderation": moderation,
        "moderation_failures": moderation_failures,
        "adjusted_effects": effects,
        "unadjusted": unadjusted,
    }
    if audit:
        audit.log(
            "ANALYSIS_COMPLETE",
            {
                "best_method": dict(aggregation["best_method"]),
                "union": aggregation["union"],
                "intersection": aggregation["intersection"],
                "n_unit_failures": len(failures),
            },
        )
    if output_dir is not None:
        export_results(results, Path(output_dir), audit)
    return results


def selected_feature_table(per_group: Dict[str, Dict[str, Dict[str, Any]]]) -> pd.DataFrame:
    rows = []
    for group, by_algo in per_group.items():
        for algo, res in by_algo.items():
            if res.get("status") != "ok":
                continue
            freq = res.get("selection_frequency")
            for col, value in res["coefficients"].items():
                feature = res["feature_origin"].get(col, col)
                rows.append(
                    {
                        "group": group,
                        "algorithm": algo,
                        "column": col,
                        "feature": feature,
                        "coefficient": float(value),
                        "selected": feature in res["selected"],
                        "selection_frequency": (
                            float(freq.get(feature, 0.0)) if freq is not None else np.nan
                        ),
                    }
                )
    return pd.DataFrame(rows)


def export_results(
    results: Dict[str, Any], out_dir: Path, audit: Optional[AuditLog] = None
) -> Path:
    """Write the tables consumed by the reporting layer."""
    tables = out_dir / "tables"
    agg = results["aggregation"]
    write_csv(tables / "Accuracy_Matrix.csv", agg["accuracy_matrix"].reset_index())
    write_csv(tables / "Method_Ranking.csv", agg["ranking"])
    write_csv(tables / "Selected_Features.csv", selected_feature_table(results["selection"]))
    write_csv(tables / "Unit_Failures.csv", results["unit_failures"])
    write_csv(tables / "Unadjusted_Odds_Ratios.csv", results["unadjusted"])
    for set_name, model in results["moderation"].items():
        if model is None:
            continue
        write_csv(tables / f"Moderation_{safe_name(set_name)}_Terms.csv", model["table"])
        effects = pd.DataFrame.from_dict(results["adjusted_effects"][set_name], orient="index")
        write_csv(
            tables / f"Adjusted_Effects_{safe_name(set_name)}.csv",
            effects.reset_index().rename(columns={"index": "column"}),
        )

    manifest = {
        "modera_version": VERSION,
        "analysis_timestamp": now_ts(),
        "versions": get_versions(),
        "settings": results["settings"],
        "schema": results["schema"],
        "best_method": dict(agg["best_method"]),
        "candidate_moderators": {"union": agg["union"], "intersection": agg["intersection"]},
        "failed_groups": agg["failed_groups"],
        "moderation_failures": results["moderation_failures"],
        "final_terms": {
            k: (v["terms"] if v is not None else None) for k, v in results["moderation"].items()
        },
    }
    if audit:
        manifest["audit"] = audit.get_verification_info()
    path = out_dir / "Run_Manifest.json"
    write_json(path, manifest)
    if audit:
        audit.log("RESULTS_EXPORTED", {"output_dir": str(out_dir)})
    return path


# ---------------------------
# Testing Infrastructure
# ---------------------------


class SyntheticTrialGenerator:
    """
    Synthetic 2x2 factorial cessation trial for tests and --demo runs.
    """

    @staticmethod
    def generate_trial(
        n_samples: int = 400,
        missing_rate: float = 0.05,
        moderator_effect: float = 1.0,
        n_noise: int = 3,
        random_state: int = RANDOM_STATE,
    ) -> Tuple[pd.DataFrame, Dict[str, Any]]:
        """
        Generate participants with a known moderator.

        Nicotine dependence (ftnd) moderates the behavioral treatment: the
        log-odds effect of counseling changes by moderator_effect per SD of
        ftnd. Missing values are injected into baseline features only.

        Returns:
            (DataFrame, schema dictionary)
        """
        rng = np.random.RandomState(random_state)
        n = n_samples

        behavioral = rng.binomial(1, 0.5, n)
        pharmacotherapy = rng.binomial(1, 0.5, n)
        age = rng.normal(45, 12, n)
        cigs_per_day = rng.gamma(4.0, 4.0, n)
        ftnd = np.clip(rng.normal(5, 2, n), 0, 10)
        depression = rng.binomial(1, 0.3, n)
        female = rng.binomial(1, 0.5, n)
        education = rng.choice(["<HS", "HS", "College"], n, p=[0.2, 0.5, 0.3])

        ftnd_z = (ftnd - 5) / 2
        logit = (
            -0.8
            + 0.4 * behavioral
            + 0.7 * pharmacotherapy
            - 0.5 * ftnd_z
            - 0.4 * depression
            + moderator_effect * behavioral * ftnd_z
        )
        abstinent = rng.binomial(1, 1 / (1 + np.exp(-logit)))

        data = {
            "abstinent": abstinent,
            "behavioral": behavioral,
            "pharmacotherapy": pharmacotherapy,
            "age": age,
            "cigs_per_day": cigs_per_day,
            "ftnd": ftnd,
            "depression": depression,
            "female": female,
            "education": education,
        }
        for i in range(n_noise):
            data[f"noise_{i + 1}"] = rng.normal(0, 1, n)
        df = pd.DataFrame(data)

        features = {
            "age": {"type": "continuous"},
            "cigs_per_day": {"type": "continuous"},
            "ftnd": {"type": "continuous"},
            "depression": {"type": "binary"},
            "female": {"type": "binary"},
            "education": {"type": "nominal", "levels": ["<HS", "HS", "College"]},
        }
        for i in range(n_noise):
            features[f"noise_{i + 1}"] = {"type": "continuous"}

        if missing_rate > 0:
            for name in features:
                mask = rng.random_sample(n) < missing_rate
                df.loc[mask, name] = np.nan

        schema = {
            "features": features,
            "outcome": "abstinent",
            "behavioral": "behavioral",
            "pharmacotherapy": "pharmacotherapy",
        }
        return df, schema


DEMO_CONFIG = {
    "imputation_count": 3,
    "lambda_grid": [0.01, 0.03, 0.1],
    "l1_ratio_grid": [0.5, 1.0],
    "rf_estimators": 100,
    "rfe_sizes": [3, 5],
    "strict_aggregation": False,
}


# ---------------------------
# CLI
# ---------------------------


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="MODERA",
        description="Variable selection and moderation analysis for a binary trial outcome",
    )
    p.add_argument("data", nargs="?", help="participant table (csv/tsv/txt/xlsx)")
    p.add_argument("--schema", help="JSON feature schema")
    p.add_argument("--config", help="JSON analysis settings")
    p.add_argument("--output", default=OUTPUT_ROOT_DEFAULT, help="output directory")
    p.add_argument("--imputations", type=int, help="number of imputed datasets")
    p.add_argument("--jobs", type=int, help="parallel worker count")
    p.add_argument("--demo", action="store_true", help="run on synthetic trial data")
    return p


def main(argv: Optional[List[str]] = None) -> int:
    args = build_arg_parser().parse_args(argv)

    print("=" * 70 + f"\nMODERA {VERSION}\n" + "=" * 70)

    session_config: Dict[str, Any] = {}
    if args.config:
        with open(args.config, "r", encoding="utf-8") as f:
            session_config.update(json.load(f))
    if args.imputations is not None:
        session_config["imputation_count"] = args.imputations
    if args.jobs is not None:
        session_config["n_jobs"] = args.jobs

    out_dir = Path(args.output).expanduser().resolve()
    out_dir.mkdir(parents=True, exist_ok=True)
    audit = AuditLog(out_dir / "audit_log.jsonl")

    try:
        if args.demo:
            df, schema_dict = SyntheticTrialGenerator.generate_trial()
            schema = FeatureSchema.from_dict(schema_dict)
            session_config = {**DEMO_CONFIG, **session_config}
            audit.log("DEMO_DATA", {"rows": int(len(df))})
        else:
            if not args.data or not args.schema:
                print("A data file and --schema are required (or use --demo).")
                return 1
            df = smart_read_file(Path(args.data).expanduser(), audit)
            schema = load_schema(Path(args.schema).expanduser())

        results = run_moderation_analysis(df, schema, session_config, audit, out_dir)
    except (ModeraError, ValueError, FileNotFoundError) as e:
        audit.log("ANALYSIS_FAILED", {"error": str(e), "type": type(e).__name__})
        audit.finalize_session()
        print(f"ERROR: {e}")
        traceback.print_exc()
        return 1

    agg = results["aggregation"]
    print("\nBest method per group:")
    for group, algo in agg["best_method"].items():
        print(f"  {group:40s} {algo}")
    print(f"\nUnion of selected features: {agg['union']}")
    print(f"Intersection of selected features: {agg['intersection']}")
    for set_name, model in results["moderation"].items():
        if model is not None:
            print(f"Final {set_name} moderation terms: {model['terms']}")
    if len(results["unit_failures"]):
        print(f"\n{len(results['unit_failures'])} selection unit(s) failed; see Unit_Failures.csv")

    seal = audit.finalize_session()
    print(
        "=" * 70
        + f"\nRESULTS: {out_dir}\nSESSION: {seal['session_id']}"
        + f"  SEAL: {seal['integrity_hash'][:16]}\n"
        + "=" * 70
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
