"""Configuration structs for the optimizer and the adaptive controller."""

from dataclasses import dataclass, field

from visemeforge.constants import (
    DEFAULT_CONSTRAINT_WEIGHT, DEFAULT_CONVERGENCE_THRESHOLD,
    DEFAULT_LEARNING_RATE, DEFAULT_MAX_ITERATIONS,
    DEFAULT_MAX_OPTIMIZATION_TIME, PROGRESS_INTERVAL, SUCCESS_SCORE,
)


@dataclass
class OptimizationConfig:
    """Parameters of one optimization run.

    ``max_optimization_time`` is in milliseconds and is checked between
    iterations.  ``focus_metrics`` is informational; ``morph_priorities``
    breaks ties between equally large adjustments.
    """
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    learning_rate: float = DEFAULT_LEARNING_RATE
    convergence_threshold: float = DEFAULT_CONVERGENCE_THRESHOLD
    constraint_weight: float = DEFAULT_CONSTRAINT_WEIGHT
    max_optimization_time: float = DEFAULT_MAX_OPTIMIZATION_TIME
    focus_metrics: list[str] = field(default_factory=list)
    morph_priorities: dict[str, float] = field(default_factory=dict)

    def __post_init__(self):
        if self.max_iterations < 1:
            raise ValueError(f"max_iterations must be >= 1, got {self.max_iterations}")
        if self.learning_rate <= 0:
            raise ValueError(f"learning_rate must be positive, got {self.learning_rate}")
        if self.convergence_threshold < 0:
            raise ValueError(f"convergence_threshold must be >= 0, got {self.convergence_threshold}")
        if self.constraint_weight < 0:
            raise ValueError(f"constraint_weight must be >= 0, got {self.constraint_weight}")
        if self.max_optimization_time <= 0:
            raise ValueError(f"max_optimization_time must be positive, got {self.max_optimization_time}")


@dataclass
class ControllerOptions:
    """Behaviour of the adaptive controller.

    ``progress_interval`` is in seconds, ``max_optimization_time`` in
    milliseconds.
    """
    progress_interval: float = PROGRESS_INTERVAL
    min_runs_for_learning: int = 3
    max_optimization_time: float = DEFAULT_MAX_OPTIMIZATION_TIME
    success_score: float = SUCCESS_SCORE
    adaptation_enabled: bool = True

    def __post_init__(self):
        if self.progress_interval <= 0:
            raise ValueError(f"progress_interval must be positive, got {self.progress_interval}")
        if self.min_runs_for_learning < 0:
            raise ValueError(f"min_runs_for_learning must be >= 0, got {self.min_runs_for_learning}")
        if self.max_optimization_time <= 0:
            raise ValueError(f"max_optimization_time must be positive, got {self.max_optimization_time}")
