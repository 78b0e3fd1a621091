"""
Analysis configuration for the tumor-vs-normal pipeline.

Every threshold the pipeline applies lives here rather than in the code that
uses it: the regulation cut-offs (|log2FC| > 1, q < 0.01) and the
independent-filtering quantile scan are conventions, not derived values, so
they are exposed as settings.
"""

import json
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Optional


_FIT_TYPES = ("parametric", "local", "mean")
_SHRINKAGE_TYPES = ("normal", "laplace", "cauchy", "none")
_VST_METHODS = ("vst", "log2")
_SIZE_FACTOR_TYPES = ("ratio", "poscounts")


@dataclass(frozen=True)
class AnalysisConfig:
    """Settings for one run of the differential expression and clustering pipeline."""

    # design
    condition_col: str = "condition"
    reference_level: str = "normal"
    treatment_level: str = "tumor"

    # classification and filtering
    alpha: float = 0.01
    lfc_threshold: float = 1.0
    independent_filtering: bool = True
    filter_alpha: Optional[float] = None
    filter_quantiles: int = 50
    filter_max_quantile: float = 0.95
    min_count: int = 0

    # size factors and dispersions
    size_factor_type: str = "ratio"
    fit_type: str = "parametric"
    min_disp: float = 1e-8
    max_disp: float = 10.0
    outlier_level: float = 0.95

    # GLM
    glm_max_iter: int = 100
    glm_tol: float = 1e-8
    ridge_lambda: float = 1e-6

    # shrinkage
    shrinkage: str = "normal"

    # transformation / PCA
    vst_method: str = "vst"
    blind: bool = True
    pseudocount: float = 1.0
    n_top_genes: int = 500
    scale_genes: bool = False
    percent_decimals: int = 1

    # clustering
    k: int = 2
    k_max: int = 8
    restarts: int = 10
    kmeans_max_iter: int = 300
    seed: int = 0

    # execution
    n_jobs: int = 1

    def __post_init__(self):
        if not 0.0 < self.alpha < 1.0:
            raise ValueError(f"alpha must lie in (0, 1), got {self.alpha}")
        if self.filter_alpha is not None and not 0.0 < self.filter_alpha < 1.0:
            raise ValueError(f"filter_alpha must lie in (0, 1), got {self.filter_alpha}")
        if self.lfc_threshold < 0:
            raise ValueError("lfc_threshold must be non-negative")
        if self.reference_level == self.treatment_level:
            raise ValueError("reference_level and treatment_level must differ")
        if self.fit_type not in _FIT_TYPES:
            raise ValueError(f"Unknown fit_type: {self.fit_type}. Use one of {_FIT_TYPES}")
        if self.shrinkage not in _SHRINKAGE_TYPES:
            raise ValueError(f"Unknown shrinkage: {self.shrinkage}. Use one of {_SHRINKAGE_TYPES}")
        if self.vst_method not in _VST_METHODS:
            raise ValueError(f"Unknown vst_method: {self.vst_method}. Use one of {_VST_METHODS}")
        if self.size_factor_type not in _SIZE_FACTOR_TYPES:
            raise ValueError(f"Unknown size_factor_type: {self.size_factor_type}")
        if not 0 < self.min_disp < self.max_disp:
            raise ValueError("require 0 < min_disp < max_disp")
        if not 0.0 < self.outlier_level < 1.0:
            raise ValueError("outlier_level must lie in (0, 1)")
        if not 0.0 < self.filter_max_quantile < 1.0:
            raise ValueError("filter_max_quantile must lie in (0, 1)")
        if self.filter_quantiles < 2:
            raise ValueError("filter_quantiles must be at least 2")
        if self.k < 1 or self.k_max < 1:
            raise ValueError("k and k_max must be at least 1")
        if self.restarts < 1:
            raise ValueError("restarts must be at least 1")
        if self.n_top_genes < 2:
            raise ValueError("n_top_genes must be at least 2")
        if self.glm_max_iter < 1 or self.kmeans_max_iter < 1:
            raise ValueError("iteration caps must be at least 1")
        if self.pseudocount <= 0:
            raise ValueError("pseudocount must be positive")

    @property
    def effective_filter_alpha(self):
        return self.alpha if self.filter_alpha is None else self.filter_alpha

    @classmethod
    def from_dict(cls, data):
        """Build a config from a plain mapping, rejecting unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown config keys: {', '.join(unknown)}")
        return cls(**data)

    def to_dict(self):
        return asdict(self)


def load_json_config(path):
    """
    Load an AnalysisConfig from a JSON file.

    Raises
    ------
    FileNotFoundError
        If the file does not exist.
    ValueError
        For a non-.json suffix, malformed JSON, a non-object root or
        invalid settings.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")
    if config_path.suffix.lower() != ".json":
        raise ValueError(
            f"Unsupported config format for '{config_path}'. Use a .json config file."
        )

    try:
        with open(config_path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
    except json.JSONDecodeError as exc:
        raise ValueError(
            f"Invalid JSON in config '{config_path}' at line {exc.lineno}, "
            f"column {exc.colno}: {exc.msg}"
        ) from exc

    if not isinstance(data, dict):
        raise ValueError(
            f"Invalid config root in '{config_path}': expected JSON object, "
            f"got {type(data).__name__}."
        )
    return AnalysisConfig.from_dict(data)
