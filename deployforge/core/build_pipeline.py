"""Ordered fallback chain that turns a target version into a staged artifact.

Strategies run strictly one after another: they compete for the same
memory-constrained host, and a parallel build would make the
out-of-memory condition being guarded against worse.
"""

from __future__ import annotations

import logging

import httpx

from deployforge.config import DeployConfig
from deployforge.core.artifact_store import ArtifactStore
from deployforge.core.cancellation import CancellationToken
from deployforge.core.errors import AcquisitionError, ErrorKind, StrategyFailure
from deployforge.core.health_probe import check_native, host_architecture
from deployforge.core.runner import CommandRunner
from deployforge.core.strategies import (
    BuildStrategy,
    DownloadStrategy,
    LocalBuildStrategy,
    RemoteBuildStrategy,
    StagedArtifactStrategy,
)
from deployforge.core.swap import SwapGuard
from deployforge.core.version_resolver import SourceCheckout
from deployforge.models.artifacts import Artifact
from deployforge.models.attempt import PlanStep

logger = logging.getLogger(__name__)


class BuildPipeline:
    """Tries each strategy in order and stages the first valid result.

    Parameters
    ----------
    strategies:
        Strategies in priority order.
    store:
        Where the winning artifact is staged.
    host_arch:
        Architecture every artifact must match.
    """

    def __init__(
        self,
        strategies: list[BuildStrategy],
        store: ArtifactStore,
        *,
        host_arch: str | None = None,
    ) -> None:
        self._strategies = list(strategies)
        self._store = store
        self._host_arch = host_arch or host_architecture()

    @property
    def strategy_names(self) -> list[str]:
        return [s.name for s in self._strategies]

    def plan(self, target_version: str) -> list[PlanStep]:
        """Which strategy would be used, without producing anything."""
        steps: list[PlanStep] = []
        chosen = False
        for strategy in self._strategies:
            applies, reason = strategy.applicable(target_version)
            selected = applies and not chosen
            chosen = chosen or applies
            steps.append(
                PlanStep(
                    strategy=strategy.name,
                    applicable=applies,
                    reason=reason,
                    selected=selected,
                )
            )
        return steps

    def acquire(
        self,
        target_version: str,
        *,
        source_ref: str = "HEAD",
        cancel: CancellationToken | None = None,
    ) -> Artifact:
        """Return the first artifact that passes validation, staged.

        Raises ``AcquisitionError(ALL_STRATEGIES_FAILED)`` carrying every
        per-strategy failure when none succeeds.
        """
        attempts: list[StrategyFailure] = []
        skipped: list[str] = []

        for strategy in self._strategies:
            if cancel is not None:
                cancel.raise_if_cancelled("acquiring")
            applies, reason = strategy.applicable(target_version)
            if not applies:
                logger.debug("strategy %s skipped: %s", strategy.name, reason)
                skipped.append(strategy.name)
                continue

            logger.info("acquiring %s via %s", target_version, strategy.name)
            try:
                data = strategy.produce(target_version, source_ref=source_ref, cancel=cancel)
            except StrategyFailure as failure:
                logger.warning("strategy %s failed: %s", strategy.name, failure)
                attempts.append(failure)
                continue
            except (OSError, httpx.InvalidURL) as exc:
                failure = _unexpected_failure(strategy, exc)
                logger.warning("strategy %s failed: %s", strategy.name, failure)
                attempts.append(failure)
                continue

            kind, detail = check_native(data, self._host_arch)
            if kind is not None:
                failure = StrategyFailure(
                    kind, detail, strategy=strategy.name, context={"size_bytes": len(data)}
                )
                logger.warning("strategy %s produced an unusable artifact: %s", strategy.name, failure)
                attempts.append(failure)
                continue

            return self._store.stage(
                data,
                target_version=target_version,
                strategy=strategy.name,
                architecture=detail,
            )

        if attempts:
            message = f"all {len(attempts)} applicable build strategies failed"
        else:
            message = "no build strategy is applicable"
        raise AcquisitionError(
            ErrorKind.ALL_STRATEGIES_FAILED,
            message,
            attempts=attempts,
            skipped=skipped,
            context={"target_version": target_version},
        )


def _unexpected_failure(strategy: BuildStrategy, exc: Exception) -> StrategyFailure:
    """Normalize an error a strategy did not classify itself."""
    kind = ErrorKind.NETWORK if isinstance(exc, httpx.InvalidURL) else ErrorKind.BUILD_FAILED
    return StrategyFailure(
        kind,
        f"{strategy.name} failed: {exc}",
        strategy=strategy.name,
        context={"exception": type(exc).__name__},
    )


def build_pipeline(
    config: DeployConfig,
    runner: CommandRunner,
    store: ArtifactStore,
    source: SourceCheckout,
    *,
    host_arch: str | None = None,
    transport: httpx.BaseTransport | None = None,
) -> BuildPipeline:
    """The standard chain: staged, local build, remote build, download."""
    arch = host_arch or host_architecture()
    strategies: list[BuildStrategy] = [
        StagedArtifactStrategy(store),
        LocalBuildStrategy(
            runner,
            source,
            tool=config.build_tool,
            commands=[config.build_command, *config.build_fallback_commands],
            output=config.build_output,
            env=config.build_env,
            timeout=config.build_timeout,
            swap_guard=SwapGuard(
                runner,
                config.swap_file,
                size_gb=config.swap_size_gb,
                min_memory_gb=config.min_build_memory_gb,
            ),
        ),
        RemoteBuildStrategy(
            runner,
            source,
            host=config.build_host,
            remote_dir=config.remote_build_dir,
            command=config.remote_build_command,
            output=config.build_output,
            timeout=config.remote_timeout,
        ),
        DownloadStrategy(
            config.prebuilt_url,
            expected_sha256=config.prebuilt_sha256,
            host_arch=arch,
            timeout=config.download_timeout,
            transport=transport,
        ),
    ]
    return BuildPipeline(strategies, store, host_arch=arch)
