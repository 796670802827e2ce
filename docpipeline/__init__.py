"""Document pipeline: build a JSON-like document from a tree of retryable steps.

Public surface::

    from docpipeline import (
        Step,
        Section,
        TemplateStep,
        StepRunner,
        Phase,
        Ready,
        Pending,
        Err,
        Environment,
        InMemoryEngine,
        StepRegistry,
        StepConfig,
        build_pipeline,
        DependencyNotMet,
        StepError,
        StepTimeoutError,
        SectionError,
        ConfigurationError,
    )
"""

from .config import StepConfig, load_config, load_system_config
from .engine import (
    ChangeEvent,
    ChangeSubscription,
    EngineProtocol,
    InMemoryEngine,
    commit_change,
)
from .environment import Environment, build_environment, materialize
from .errors import (
    ConfigurationError,
    DependencyNotMet,
    DocPipelineError,
    SectionError,
    StepError,
    StepTimeoutError,
)
from .protocol import Err, Outcome, Pending, Ready, StepProtocol
from .registry import StepRegistry, build_pipeline, load_pipeline
from .runner import Phase, StepRunner
from .section import Section
from .step import Step, TemplateStep
from .templates import JinjaTemplateRenderer, TemplateRenderer, is_template

__all__ = [
    # Steps
    "Step",
    "Section",
    "TemplateStep",
    "StepProtocol",
    # Execution
    "StepRunner",
    "Phase",
    "Ready",
    "Pending",
    "Err",
    "Outcome",
    # Environment and templates
    "Environment",
    "build_environment",
    "materialize",
    "TemplateRenderer",
    "JinjaTemplateRenderer",
    "is_template",
    # Engine
    "EngineProtocol",
    "InMemoryEngine",
    "ChangeEvent",
    "ChangeSubscription",
    "commit_change",
    # Configuration
    "StepConfig",
    "StepRegistry",
    "build_pipeline",
    "load_pipeline",
    "load_config",
    "load_system_config",
    # Errors
    "DocPipelineError",
    "DependencyNotMet",
    "StepError",
    "StepTimeoutError",
    "SectionError",
    "ConfigurationError",
]
