"""
GitHub Actions Actuator - Implements Actuator on top of GitHub Actions.

Each lifecycle operation dispatches a workflow run with the operation and
object identity as inputs, then waits for the run to complete.
"""

import asyncio
import logging
import os
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

import aiohttp

from errors import ERR_CONFIGURATION_PROBLEM, ActuatorError, RequeueAfterError
from models import Cluster, Infrastructure
from plugins.actuators.base import Actuator

logger = logging.getLogger(__name__)


class GitHubActionsActuator(Actuator):
    """
    Actuator that provisions infrastructure through GitHub Actions workflows.

    The Infrastructure spec names the workflow::

        owner: my-org
        repo: infra
        workflow: infrastructure.yml      # default for every operation
        workflows:                        # optional per-operation override
          delete: teardown.yml
        ref: main
        inputs:
          region: eu-west-1

    Workflow inputs always include ``operation``, ``namespace``, ``name`` and
    ``generation``.
    """

    def __init__(self):
        self.github_token: Optional[str] = None
        self.api_base_url: str = "https://api.github.com"
        self.timeout: int = 3600  # 1 hour default timeout for workflow runs
        self.poll_interval: int = 10  # seconds between status checks
        self.run_discovery_attempts: int = 30
        # Last dispatch per Infrastructure key; run_id is None until its run is found
        self._workflow_runs: Dict[str, Dict[str, Any]] = {}
        # One dispatch at a time per workflow, keyed by its runs URL
        self._dispatch_locks: Dict[str, asyncio.Lock] = {}
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def name(self) -> str:
        return "github_actions"

    @property
    def version(self) -> str:
        return "1.0.0"

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """Load GitHub Actions configuration from environment variables."""
        return {
            "github_token": os.getenv("GITHUB_TOKEN", ""),
            "api_base_url": os.getenv("GITHUB_API_URL", "https://api.github.com"),
            "timeout": int(os.getenv("GITHUB_ACTIONS_TIMEOUT", "3600")),
            "poll_interval": int(os.getenv("GITHUB_ACTIONS_POLL_INTERVAL", "10")),
        }

    async def initialize(self, config: Dict[str, Any]) -> None:
        self.github_token = config.get("github_token")
        self.api_base_url = config.get("api_base_url", self.api_base_url)
        self.timeout = config.get("timeout", self.timeout)
        self.poll_interval = config.get("poll_interval", self.poll_interval)
        self.run_discovery_attempts = config.get(
            "run_discovery_attempts", self.run_discovery_attempts
        )

        if not self.github_token:
            logger.warning(
                "GitHub token not configured. Set GITHUB_TOKEN environment variable."
            )

        logger.debug(
            f"GitHub Actions actuator initialized: api_base_url={self.api_base_url}, "
            f"timeout={self.timeout}s, poll_interval={self.poll_interval}s"
        )

    async def reconcile(self, infra: Infrastructure, cluster: Cluster) -> None:
        await self._run("reconcile", infra, cluster)

    async def delete(self, infra: Infrastructure, cluster: Cluster) -> None:
        run_info = self._workflow_runs.get(infra.key)
        if (
            run_info
            and run_info.get("run_id") is not None
            and run_info.get("status") != "completed"
        ):
            await self._cancel_workflow_run(run_info["workspace"], run_info["run_id"])
        await self._run("delete", infra, cluster)
        self._workflow_runs.pop(infra.key, None)

    async def migrate(self, infra: Infrastructure, cluster: Cluster) -> None:
        await self._run("migrate", infra, cluster)
        self._workflow_runs.pop(infra.key, None)

    async def restore(self, infra: Infrastructure, cluster: Cluster) -> None:
        await self._run("restore", infra, cluster)

    # Private helper methods

    def _prepare(
        self, operation: str, infra: Infrastructure, cluster: Cluster
    ) -> Dict[str, Any]:
        """Build the workspace for one workflow dispatch from the spec."""
        spec = infra.spec
        missing = [f for f in ("owner", "repo") if not spec.get(f)]
        workflow = (spec.get("workflows") or {}).get(operation) or spec.get("workflow")
        if not workflow:
            missing.append("workflow")
        if missing:
            raise ActuatorError(
                f"Spec must contain fields: {', '.join(missing)}",
                codes=[ERR_CONFIGURATION_PROBLEM],
                retryable=False,
            )

        owner = spec["owner"]
        repo = spec["repo"]
        inputs = {str(k): str(v) for k, v in (spec.get("inputs") or {}).items()}
        inputs.update(
            {
                "operation": operation,
                "namespace": infra.namespace,
                "name": infra.name,
                "generation": str(infra.generation),
            }
        )
        if cluster.seed.get("name"):
            inputs["seed"] = str(cluster.seed["name"])

        return {
            "owner": owner,
            "repo": repo,
            "workflow": workflow,
            "ref": spec.get("ref", "main"),
            "inputs": inputs,
            "dispatch_url": (
                f"{self.api_base_url}/repos/{owner}/{repo}"
                f"/actions/workflows/{workflow}/dispatches"
            ),
            "runs_url": (
                f"{self.api_base_url}/repos/{owner}/{repo}"
                f"/actions/workflows/{workflow}/runs"
            ),
        }

    async def _run(
        self, operation: str, infra: Infrastructure, cluster: Cluster
    ) -> Dict[str, Any]:
        """Dispatch the workflow for ``operation`` and wait for it to finish."""
        workspace = self._prepare(operation, infra, cluster)

        try:
            run_id = await self._trigger_workflow(workspace, infra.key, operation)
            self._workflow_runs[infra.key] = {
                "run_id": run_id,
                "operation": operation,
                "workspace": workspace,
                "status": "in_progress",
                "started_at": datetime.now(timezone.utc).isoformat(),
            }

            final_status = await asyncio.wait_for(
                self._wait_for_completion(workspace, run_id), timeout=self.timeout
            )
        except asyncio.TimeoutError as e:
            raise ActuatorError(
                f"Workflow for {operation} of {infra.key} timed out "
                f"after {self.timeout}s",
                cause=e,
            ) from e
        except aiohttp.ClientError as e:
            raise ActuatorError(
                f"GitHub API request failed during {operation} of {infra.key}: {e}",
                cause=e,
            ) from e

        self._workflow_runs[infra.key]["status"] = "completed"
        html_url = final_status.get("html_url", "N/A")
        if final_status.get("conclusion") != "success":
            raise ActuatorError(
                f"Workflow run {run_id} failed with conclusion: "
                f"{final_status.get('conclusion')} ({html_url})"
            )

        logger.info(f"Workflow run {run_id} for {operation} of {infra.key} succeeded")
        return final_status

    def _get_headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if self.github_token:
            headers["Authorization"] = f"Bearer {self.github_token}"
        return headers

    def _get_session(self) -> aiohttp.ClientSession:
        """Shared API session, created on first use and released by close()."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(headers=self._get_headers())
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    def _run_url(self, workspace: Dict[str, Any], run_id: int) -> str:
        return (
            f"{self.api_base_url}/repos/{workspace['owner']}/{workspace['repo']}"
            f"/actions/runs/{run_id}"
        )

    async def _trigger_workflow(
        self, workspace: Dict[str, Any], key: str, operation: str
    ) -> int:
        """
        Dispatch the workflow and return the ID of the run it started.

        The GitHub API does not return the run a dispatch created, so the run
        is found by listing the workflow's runs afterwards. When that takes
        too long the dispatch stays recorded and the next call for the same
        operation resumes looking for its run instead of dispatching again.
        """
        lock = self._dispatch_locks.setdefault(workspace["runs_url"], asyncio.Lock())
        async with lock:
            pending = self._workflow_runs.get(key)
            if (
                pending is not None
                and any(
                    info is pending
                    for info in self._waiting_dispatches(workspace["runs_url"])
                )
                and pending["operation"] == operation
            ):
                logger.info(f"Looking for the run of the earlier {operation} of {key}")
            else:
                known_run_ids = await self._dispatch_workflow(workspace)
                # Re-inserted so dispatches stay ordered by dispatch time
                self._workflow_runs.pop(key, None)
                pending = {
                    "run_id": None,
                    "operation": operation,
                    "workspace": workspace,
                    "status": "dispatched",
                    "dispatched_at": datetime.now(timezone.utc).isoformat(),
                    "known_run_ids": known_run_ids,
                    "expires_at": time.monotonic() + self.timeout,
                }
                self._workflow_runs[key] = pending

            run_id = await self._discover_run(workspace, pending)
            if run_id is None:
                raise RequeueAfterError(
                    ActuatorError(
                        "Workflow was dispatched but its run could not be found"
                    ),
                    requeue_after=self.poll_interval,
                )

            pending["run_id"] = run_id
            logger.info(f"Workflow run {run_id} started for {key}")
            return run_id

    async def _dispatch_workflow(self, workspace: Dict[str, Any]) -> Set[int]:
        """Dispatch the workflow; returns the IDs of runs that existed before."""
        known_run_ids = {run["id"] for run in await self._get_recent_runs(workspace)}

        session = self._get_session()
        payload = {"ref": workspace["ref"], "inputs": workspace["inputs"]}
        async with session.post(workspace["dispatch_url"], json=payload) as response:
            if response.status not in (200, 204):
                raise ActuatorError(
                    f"Failed to dispatch workflow {workspace['workflow']}: "
                    f"{response.status} - {await response.text()}"
                )
        return known_run_ids

    def _waiting_dispatches(self, runs_url: str) -> List[Dict[str, Any]]:
        """
        Dispatches of one workflow whose run is not found yet, oldest first.

        A dispatch whose run did not show up within the run timeout is
        considered lost.
        """
        now = time.monotonic()
        return [
            info
            for info in self._workflow_runs.values()
            if info["run_id"] is None
            and info["workspace"]["runs_url"] == runs_url
            and info["expires_at"] > now
        ]

    async def _discover_run(
        self, workspace: Dict[str, Any], dispatch: Dict[str, Any]
    ) -> Optional[int]:
        """
        Find the run started by ``dispatch``.

        Runs newer than the oldest waiting dispatch of the workflow, and not
        yet claimed by another object, are handed out in dispatch order.
        """
        for _ in range(self.run_discovery_attempts):
            await asyncio.sleep(1)
            waiting = self._waiting_dispatches(workspace["runs_url"])
            positions = [i for i, info in enumerate(waiting) if info is dispatch]
            if not positions:
                return None
            baseline = waiting[0]["known_run_ids"]
            claimed = {
                info["run_id"]
                for info in self._workflow_runs.values()
                if info["run_id"] is not None
            }
            new_run_ids = sorted(
                run["id"]
                for run in await self._get_recent_runs(workspace)
                if run["id"] not in baseline and run["id"] not in claimed
            )
            if positions[0] < len(new_run_ids):
                return new_run_ids[positions[0]]
        return None

    async def _get_recent_runs(
        self, workspace: Dict[str, Any]
    ) -> List[Dict[str, Any]]:
        session = self._get_session()
        params = {"per_page": 10, "event": "workflow_dispatch"}
        async with session.get(workspace["runs_url"], params=params) as response:
            if response.status != 200:
                logger.debug(f"Listing workflow runs returned {response.status}")
                return []
            data = await response.json()
        return data.get("workflow_runs", [])

    async def _get_run_status(
        self, workspace: Dict[str, Any], run_id: int
    ) -> Dict[str, Any]:
        session = self._get_session()
        async with session.get(self._run_url(workspace, run_id)) as response:
            if response.status != 200:
                raise ActuatorError(
                    f"Failed to get status of workflow run {run_id}: "
                    f"{response.status}"
                )
            return await response.json()

    async def _wait_for_completion(
        self, workspace: Dict[str, Any], run_id: int
    ) -> Dict[str, Any]:
        while True:
            run = await self._get_run_status(workspace, run_id)
            if run["status"] == "completed":
                return run

            logger.debug(
                f"Workflow run {run_id} is {run['status']}, "
                f"checking again in {self.poll_interval}s"
            )
            await asyncio.sleep(self.poll_interval)

    async def _cancel_workflow_run(
        self, workspace: Dict[str, Any], run_id: int
    ) -> bool:
        session = self._get_session()
        cancel_url = f"{self._run_url(workspace, run_id)}/cancel"
        async with session.post(cancel_url) as response:
            if response.status != 202:
                logger.warning(
                    f"Failed to cancel workflow run {run_id}: {response.status}"
                )
                return False
        logger.info(f"Cancelled workflow run {run_id}")
        return True
