"""Public package entrypoint for the kiln recipe build engine."""

from .config import EngineConfig
from .conditions import parse_condition
from .dependencies import DependencyPlan, check_toolchain, resolve_dependencies
from .engine import BuildPlan, BuildResult, Engine
from .errors import (
    ChecksumMismatchError,
    ExternalProcessError,
    IncompatibleToolchainError,
    KilnError,
    NetworkFetchError,
    PatchApplicationError,
    PolicyError,
    RecipeError,
    ScratchLockedError,
    UnknownOptionError,
    UnsupportedVariantError,
    ValidationError,
)
from .models import BuildRequest, InstallReceipt, Recipe, Toolchain
from .options import OptionSet, resolve_options
from .policy import Policy, RetryPolicy
from .receipt import read_receipt, write_receipt
from .recipe import load_recipe, parse_recipe, recipe_digest

__all__ = [
    "BuildPlan",
    "BuildRequest",
    "BuildResult",
    "ChecksumMismatchError",
    "DependencyPlan",
    "Engine",
    "EngineConfig",
    "ExternalProcessError",
    "IncompatibleToolchainError",
    "InstallReceipt",
    "KilnError",
    "NetworkFetchError",
    "OptionSet",
    "PatchApplicationError",
    "Policy",
    "PolicyError",
    "Recipe",
    "RecipeError",
    "RetryPolicy",
    "ScratchLockedError",
    "Toolchain",
    "UnknownOptionError",
    "UnsupportedVariantError",
    "ValidationError",
    "check_toolchain",
    "load_recipe",
    "parse_condition",
    "parse_recipe",
    "read_receipt",
    "recipe_digest",
    "resolve_dependencies",
    "resolve_options",
    "write_receipt",
]
