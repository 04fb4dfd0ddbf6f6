"""Calibration harness configuration: candidates, criteria, grids, test inputs."""

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Optional

from ..taxonomy import TaskCategory

DEFAULT_MODEL_SIZE_MB = 30


@dataclass(frozen=True)
class CandidateModel:
    name: str
    expected_size_mb: int
    description: str = ""


CANDIDATE_MODELS = [
    CandidateModel(
        "sentence-transformers/all-MiniLM-L6-v2", 23, "Most popular, good baseline",
    ),
    CandidateModel("BAAI/bge-small-en-v1.5", 33, "BAAI model, strong performance"),
    CandidateModel("thenlper/gte-small", 33, "Alibaba model, competitive"),
    CandidateModel("intfloat/e5-small-v2", 33, "Microsoft model, good for retrieval"),
]


@dataclass(frozen=True)
class SuccessCriteria:
    min_accuracy: float = 0.85
    max_model_size_mb: int = 35
    min_confidence_threshold: float = 0.70
    desktop_load_time_ms: int = 3000
    mobile_load_time_ms: int = 5000
    desktop_inference_ms: int = 100
    mobile_inference_ms: int = 200


@dataclass(frozen=True)
class EdgeCase:
    """A hand-written edge-case input. ``expected_category=None`` marks a vague input."""
    text: str
    expected_category: Optional[TaskCategory]
    description: str = ""

    @property
    def is_vague(self) -> bool:
        return self.expected_category is None


EDGE_CASES = [
    EdgeCase("analyze data", None, "Too vague"),
    EdgeCase("process images", TaskCategory.COMPUTER_VISION, "Ambiguous"),
    EdgeCase("detect things", None, "Missing context"),
    EdgeCase("ML task", None, "No useful signal"),
    EdgeCase("help me with AI", None, "Generic request"),
    EdgeCase("build a model", None, "Vague"),
    EdgeCase("classify dog breeds in photos", TaskCategory.COMPUTER_VISION, "Clear CV task"),
    EdgeCase("detect spam emails", TaskCategory.NATURAL_LANGUAGE_PROCESSING, "Clear NLP task"),
    EdgeCase("predict stock prices", TaskCategory.TIME_SERIES, "Clear time series task"),
    EdgeCase("convert speech to text", TaskCategory.SPEECH_PROCESSING, "Clear speech task"),
    EdgeCase(
        "recommend movies to users", TaskCategory.RECOMMENDATION_SYSTEMS,
        "Clear recommendation task",
    ),
    EdgeCase("train a robot to walk", TaskCategory.REINFORCEMENT_LEARNING, "Clear RL task"),
    EdgeCase(
        "clean missing values in dataset", TaskCategory.DATA_PREPROCESSING,
        "Clear preprocessing task",
    ),
]

# Inputs cycled through by the latency measurements
PERFORMANCE_INPUTS = [
    "classify images of dogs",
    "detect objects in photos",
    "analyze sentiment in reviews",
    "predict stock prices",
    "convert speech to text",
    "recommend movies to users",
    "clean data for analysis",
    "detect spam emails",
    "identify faces in pictures",
    "forecast weather patterns",
    "transcribe audio recordings",
    "categorize news articles",
    "extract entities from text",
    "segment medical images",
    "generate product descriptions",
]


@dataclass
class HarnessConfig:
    """Everything the four experiments need besides the corpus."""

    models: list[CandidateModel] = field(default_factory=lambda: list(CANDIDATE_MODELS))
    success_criteria: SuccessCriteria = field(default_factory=SuccessCriteria)
    edge_cases: list[EdgeCase] = field(default_factory=lambda: list(EDGE_CASES))

    # Threshold calibration
    thresholds: list[float] = field(
        default_factory=lambda: [0.50, 0.55, 0.60, 0.65, 0.70, 0.75, 0.80, 0.85, 0.90]
    )
    k_values: list[int] = field(default_factory=lambda: [3, 5, 7, 10])
    voting_methods: list[str] = field(default_factory=lambda: ["simple", "weighted"])
    target_accuracy: float = 0.70
    min_coverage: float = 0.50

    # Coverage analysis
    example_counts: list[int] = field(default_factory=lambda: [5, 10, 20, 50])
    weak_category_floor: float = 0.80
    diminishing_returns_gain: float = 0.02
    cv_folds: int = 5

    # Performance
    cold_start_iterations: int = 3
    warm_start_iterations: int = 10
    inference_iterations: int = 50
    performance_inputs: list[str] = field(default_factory=lambda: list(PERFORMANCE_INPUTS))

    # Leave-one-out sampling; None evaluates every reference example
    sample_size: Optional[int] = None
    seed: int = 42

    # Classifier parameters used while measuring
    top_k: int = 5
    voting_method: str = "weighted"

    results_dir: Path = Path("validation-results")
    cache_dir: Optional[Path] = None

    def model(self, name: str) -> CandidateModel:
        """Candidate by name; unknown names get a default size estimate."""
        for candidate in self.models:
            if candidate.name == name:
                return candidate
        return CandidateModel(name, DEFAULT_MODEL_SIZE_MB, "Custom model")

    def to_dict(self) -> dict:
        d = asdict(self)
        d["results_dir"] = str(self.results_dir)
        d["cache_dir"] = str(self.cache_dir) if self.cache_dir else None
        return d
