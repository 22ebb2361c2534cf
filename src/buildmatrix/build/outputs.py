"""
Exported outputs of a matrix run.

The aggregator collects every platform's package, app, checks and dev shell
into one ExportedOutputs value, together with the platform-independent
formatter and the overlay exposing the app under the project name.

Strict mode requires every enumerated platform to be present and raises
AggregationIncompleteError otherwise. Soft mode omits failed platforms and
lists them in ExportedOutputs.failures.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from .checks import CheckResult
from .dev_shell import DevShell
from .formatter import FormatterCommand
from .package_builder import App, PackageArtifact


class AggregationIncompleteError(Exception):
    """Raised in strict mode when a platform's outputs are missing."""

    def __init__(self, missing: List[str], failures: List["PlatformFailure"]):
        self.missing = missing
        self.failures = failures
        details = "\n".join(f"  {failure}" for failure in failures)
        super().__init__(f"Outputs missing for {', '.join(missing)}\n{details}".rstrip())


class OverlayError(LookupError):
    """Raised when the overlay has no app for a system."""

    pass


@dataclass
class PlatformFailure:
    """A platform that produced no outputs.

    Attributes:
        platform: System that failed
        stage: 'cancelled', 'toolchain', 'deps', 'package' or 'devshell'
        message: Diagnostic, including the engine's own output
        checks: Results of checks that ran before the platform failed
    """

    platform: str
    stage: str
    message: str
    checks: List[CheckResult] = field(default_factory=list)

    @property
    def failed_checks(self) -> List[CheckResult]:
        return [result for result in self.checks if not result.success]

    def __str__(self) -> str:
        return f"{self.platform} [{self.stage}]: {self.message}"


@dataclass
class PlatformOutputs:
    """Everything exported for one platform."""

    platform: str
    packages: Dict[str, PackageArtifact] = field(default_factory=dict)
    apps: Dict[str, App] = field(default_factory=dict)
    checks: Dict[str, CheckResult] = field(default_factory=dict)
    dev_shells: Dict[str, DevShell] = field(default_factory=dict)

    @property
    def failed_checks(self) -> List[CheckResult]:
        return [result for result in self.checks.values() if not result.success]

    @property
    def success(self) -> bool:
        return not self.failed_checks

    def to_dict(self) -> Dict[str, Any]:
        return {
            "packages": {
                name: {
                    "out": str(artifact.out_dir),
                    "binaries": [str(binary) for binary in artifact.binaries],
                    "deps": artifact.deps_key,
                }
                for name, artifact in self.packages.items()
            },
            "apps": {name: {"program": str(app.program)} for name, app in self.apps.items()},
            "checks": {
                name: {"success": result.success, "duration": round(result.duration, 3)}
                for name, result in self.checks.items()
            },
            "devShells": {name: shell.describe() for name, shell in self.dev_shells.items()},
        }


@dataclass
class Overlay:
    """Platform-independent view exposing the app under the project name."""

    name: str
    apps: Dict[str, App] = field(default_factory=dict)

    def resolve(self, system: str) -> App:
        """Return the app built for the consuming system.

        Raises:
            OverlayError: If no app exists for system
        """
        try:
            return self.apps[system]
        except KeyError:
            raise OverlayError(
                f"Overlay {self.name!r} has no app for {system}; available: {', '.join(sorted(self.apps)) or 'none'}"
            )


@dataclass
class ExportedOutputs:
    """Aggregate outputs of a run."""

    per_system: Dict[str, PlatformOutputs]
    overlay: Overlay
    formatter: Optional[FormatterCommand] = None
    failures: List[PlatformFailure] = field(default_factory=list)
    strict: bool = False

    @property
    def systems(self) -> List[str]:
        return list(self.per_system)

    @property
    def failed_checks(self) -> List[CheckResult]:
        failed = [result for outputs in self.per_system.values() for result in outputs.failed_checks]
        return failed + [result for failure in self.failures for result in failure.failed_checks]

    @property
    def success(self) -> bool:
        return not self.failures and not self.failed_checks

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly summary (used by `buildmatrix show`)."""
        return {
            "systems": {system: outputs.to_dict() for system, outputs in self.per_system.items()},
            "overlay": {"name": self.overlay.name, "systems": sorted(self.overlay.apps)},
            "formatter": {
                "tool": self.formatter.tool,
                "extensions": list(self.formatter.extensions),
            }
            if self.formatter
            else None,
            "failures": [
                {
                    "platform": f.platform,
                    "stage": f.stage,
                    "message": f.message,
                    "checks": {result.name: {"success": result.success} for result in f.checks},
                }
                for f in self.failures
            ],
            "strict": self.strict,
        }


PlatformResult = Union[PlatformOutputs, PlatformFailure]


class OutputAggregator:
    """
    Collects per-platform results into ExportedOutputs.

    Example usage:
        aggregator = OutputAggregator("nez", formatter, strict=False)
        outputs = aggregator.aggregate(platforms, results)
    """

    def __init__(self, name: str, formatter: Optional[FormatterCommand] = None, strict: bool = False):
        self.name = name
        self.formatter = formatter
        self.strict = strict

    def aggregate(self, platforms: Sequence[str], results: Mapping[str, PlatformResult]) -> ExportedOutputs:
        """Aggregate results in platform order.

        Args:
            platforms: Enumerated platforms
            results: Outcome per platform; a platform without an entry counts
                as failed

        Returns:
            ExportedOutputs

        Raises:
            AggregationIncompleteError: In strict mode, if any platform failed
        """
        per_system: Dict[str, PlatformOutputs] = {}
        failures: List[PlatformFailure] = []

        for platform in platforms:
            result = results.get(platform)
            if isinstance(result, PlatformOutputs):
                per_system[platform] = result
            elif isinstance(result, PlatformFailure):
                failures.append(result)
            else:
                failures.append(PlatformFailure(platform, "package", "No result was produced"))

        if self.strict and failures:
            raise AggregationIncompleteError([f.platform for f in failures], failures)

        overlay = Overlay(
            name=self.name,
            apps={
                system: outputs.apps["default"]
                for system, outputs in per_system.items()
                if "default" in outputs.apps
            },
        )
        return ExportedOutputs(
            per_system=per_system,
            overlay=overlay,
            formatter=self.formatter,
            failures=failures,
            strict=self.strict,
        )


def package_outputs(
    platform: str,
    artifact: Optional[PackageArtifact],
    checks: Sequence[CheckResult],
    dev_shell: DevShell,
) -> PlatformOutputs:
    """Assemble one platform's outputs under the 'default' attribute names."""
    outputs = PlatformOutputs(platform=platform)
    if artifact is not None:
        outputs.packages["default"] = artifact
        app = artifact.app()
        if app is not None:
            outputs.apps["default"] = app
    outputs.checks = {result.name: result for result in checks}
    outputs.dev_shells["default"] = dev_shell
    return outputs

