"""
Sandboxed plugin execution.

Each call runs on its own worker thread so a misbehaving plugin can be
timed out and terminated without taking the caller down with it. Python
threads cannot be killed, so termination is cooperative: the capability's
optional terminate() hook is signalled, running calls get a grace period
to finish, and the plugin is refused every later call.
"""

import logging
import threading
from enum import Enum
from typing import Any, Dict, List, Optional

from retrovault.errors import FatalPipelineError
from .manifest import Plugin, PluginError

logger = logging.getLogger(__name__)


class PluginStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    TERMINATED = "terminated"


class SandboxError(PluginError):
    """Plugin execution failed in the sandbox."""
    pass


class PluginTerminatedError(SandboxError):
    """Plugin was terminated and refuses further calls."""
    pass


class PluginTimeoutError(SandboxError):
    """Plugin call exceeded the execution timeout."""
    pass


class PluginEntryPointError(SandboxError, FatalPipelineError):
    """Capability no longer provides a method the host dispatches to."""
    pass


class _Call:
    """One in-flight plugin call."""

    def __init__(self, target, args, kwargs):
        self.result: Any = None
        self.error: Optional[BaseException] = None
        self.thread = threading.Thread(
            target=self._run, args=(target, args, kwargs), daemon=True
        )

    def _run(self, target, args, kwargs):
        try:
            self.result = target(*args, **kwargs)
        except BaseException as e:
            self.error = e


class PluginSandbox:
    """
    Runs plugin methods on worker threads and tracks their status.

    Example:
        sandbox = PluginSandbox(timeout=30)
        rom = sandbox.execute(plugin, 'convert', rom)
        sandbox.get_status(plugin.id)  # 'idle'
    """

    def __init__(self, timeout: Optional[float] = None, grace_period: float = 5.0):
        """
        Initialize sandbox.

        Args:
            timeout: Per-call timeout in seconds (None waits indefinitely)
            grace_period: Seconds terminate() waits for running calls
        """
        self.timeout = timeout
        self.grace_period = grace_period
        self._lock = threading.Lock()
        self._status: Dict[str, PluginStatus] = {}
        self._plugins: Dict[str, Plugin] = {}
        self._active: Dict[str, List[_Call]] = {}

    def execute(self, plugin: Plugin, method: str, *args, **kwargs) -> Any:
        """
        Call a capability method on a worker thread.

        Args:
            plugin: Plugin to run
            method: Capability method name
            *args: Positional arguments for the method
            **kwargs: Keyword arguments for the method

        Returns:
            The method's return value

        Raises:
            PluginTerminatedError: If the plugin was terminated
            PluginEntryPointError: If the capability lacks the method
            PluginTimeoutError: If the call exceeds the timeout
            Exception: Whatever the plugin method raised
        """
        if self.get_status(plugin.id) == PluginStatus.TERMINATED.value:
            raise PluginTerminatedError(f"Plugin {plugin.id} has been terminated")

        target = getattr(plugin.capability, method, None)
        if not callable(target):
            raise PluginEntryPointError(
                f"Plugin {plugin.id} does not provide '{method}'"
            )

        call = _Call(target, args, kwargs)

        with self._lock:
            if self._status.get(plugin.id) == PluginStatus.TERMINATED:
                raise PluginTerminatedError(f"Plugin {plugin.id} has been terminated")
            self._plugins[plugin.id] = plugin
            self._active.setdefault(plugin.id, []).append(call)
            self._status[plugin.id] = PluginStatus.RUNNING

        logger.debug(f"Sandbox: {plugin.id}.{method}() started")
        call.thread.start()
        call.thread.join(self.timeout)

        if call.thread.is_alive():
            logger.warning(
                f"Plugin {plugin.id}.{method}() exceeded {self.timeout}s timeout; terminating"
            )
            self.terminate(plugin.id)
            raise PluginTimeoutError(
                f"Plugin {plugin.id}.{method}() timed out after {self.timeout}s"
            )

        self._finish(plugin.id, call)

        if call.error is not None:
            raise call.error
        return call.result

    def get_status(self, plugin_id: str) -> str:
        """Status of a plugin: 'running', 'idle' or 'terminated'."""
        with self._lock:
            return self._status.get(plugin_id, PluginStatus.IDLE).value

    def terminate(self, plugin_id: str) -> None:
        """
        Terminate a plugin.

        Signals the capability's optional terminate() hook, waits up to the
        grace period for running calls, and marks the plugin terminated.
        """
        with self._lock:
            self._status[plugin_id] = PluginStatus.TERMINATED
            plugin = self._plugins.get(plugin_id)
            running = list(self._active.get(plugin_id, []))

        if plugin is not None:
            hook = getattr(plugin.capability, 'terminate', None)
            if callable(hook):
                try:
                    hook()
                except Exception as e:
                    logger.warning(f"Plugin {plugin_id} terminate hook failed: {e}")

        for call in running:
            call.thread.join(self.grace_period)
            if call.thread.is_alive():
                logger.warning(
                    f"Plugin {plugin_id} still running after {self.grace_period}s grace period"
                )

        logger.info(f"Plugin {plugin_id} terminated")

    def _finish(self, plugin_id: str, call: _Call) -> None:
        with self._lock:
            active = self._active.get(plugin_id, [])
            if call in active:
                active.remove(call)
            if self._status.get(plugin_id) != PluginStatus.TERMINATED and not active:
                self._status[plugin_id] = PluginStatus.IDLE
