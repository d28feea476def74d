from __future__ import annotations

import logging
import queue
import threading
import time
from typing import Callable, Dict, List, Optional, Tuple

import psutil
import pynvml

from engine_agent.core.errors import MonitorSampleError
from engine_agent.core.models import ResourceSample
from engine_agent.utils.logger import get_logger

INTERVAL_SEC = 30.0
CPU_WINDOW_SEC = 1.0

Sink = Callable[[ResourceSample], None]

# NVML errors that mean "no GPU stack here" rather than "GPU query broke"
_NVML_ABSENT = (
    pynvml.NVMLError_LibraryNotFound,
    pynvml.NVMLError_DriverNotLoaded,
    pynvml.NVMLError_NotSupported,
)


def _clamp_percent(value: float) -> float:
    return min(100.0, max(0.0, float(value)))


class NvmlGpuProbe:
    """Per-device GPU utilization through NVML."""

    def utilization(self) -> List[float]:
        """Utilization percent per device; an empty list when no NVIDIA stack is present."""
        try:
            pynvml.nvmlInit()
        except _NVML_ABSENT:
            return []
        try:
            out: List[float] = []
            for i in range(pynvml.nvmlDeviceGetCount()):
                handle = pynvml.nvmlDeviceGetHandleByIndex(i)
                out.append(float(pynvml.nvmlDeviceGetUtilizationRates(handle).gpu))
            return out
        finally:
            try:
                pynvml.nvmlShutdown()
            except pynvml.NVMLError:
                pass


class ResourceMonitor:
    """Point-in-time host samples: CPU, memory, disk and GPU."""

    def __init__(
        self,
        disk_path: str = "/",
        cpu_window: float = CPU_WINDOW_SEC,
        gpu_probe: Optional[NvmlGpuProbe] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.disk_path = disk_path
        self.cpu_window = cpu_window
        self.gpu_probe = gpu_probe if gpu_probe is not None else NvmlGpuProbe()
        self.logger = logger or get_logger("monitor")

    def cpu_percent(self) -> float:
        # blocks for cpu_window: a percentage needs two readings
        return _clamp_percent(psutil.cpu_percent(interval=self.cpu_window))

    def memory_usage(self) -> Tuple[int, int, float]:
        vm = psutil.virtual_memory()
        return int(vm.total), int(vm.used), _clamp_percent(vm.percent)

    def disk_usage(self) -> Tuple[int, int, float]:
        du = psutil.disk_usage(self.disk_path)
        return int(du.total), int(du.used), _clamp_percent(du.percent)

    def gpu_usage(self) -> Tuple[List[float], Optional[str]]:
        """GPU utilization per device and the query error, if any. Never raises."""
        try:
            return [_clamp_percent(v) for v in self.gpu_probe.utilization()], None
        except (pynvml.NVMLError, OSError) as e:
            self.logger.debug(f"GPU query failed, reporting no devices: {e}")
            return [], str(e)

    def sample_once(self) -> ResourceSample:
        """
        Collect one sample. Blocks for about ``cpu_window`` seconds.

        A metric that fails is reported as zero and named in ``sample.errors``.

        Raises:
            MonitorSampleError: CPU, memory and disk all failed.
        """
        errors: Dict[str, str] = {}

        cpu = 0.0
        try:
            cpu = self.cpu_percent()
        except (psutil.Error, OSError) as e:
            errors["cpu"] = str(e)

        mem_total, mem_used, mem_pct = 0, 0, 0.0
        try:
            mem_total, mem_used, mem_pct = self.memory_usage()
        except (psutil.Error, OSError) as e:
            errors["memory"] = str(e)

        disk_total, disk_used, disk_pct = 0, 0, 0.0
        try:
            disk_total, disk_used, disk_pct = self.disk_usage()
        except (psutil.Error, OSError) as e:
            errors["disk"] = str(e)

        if {"cpu", "memory", "disk"} <= errors.keys():
            raise MonitorSampleError("Every host metric failed", errors=errors)

        gpus, gpu_error = self.gpu_usage()
        if gpu_error:
            errors["gpu"] = gpu_error

        for metric, message in errors.items():
            self.logger.warning(f"Error collecting {metric} usage: {message}")

        return ResourceSample(
            timestamp=time.time(),
            cpu_percent=cpu,
            memory_total=mem_total,
            memory_used=mem_used,
            memory_percent=mem_pct,
            disk_total=disk_total,
            disk_used=disk_used,
            disk_percent=disk_pct,
            gpu_percent=tuple(gpus),
            errors=errors,
        )

    def run_periodic(self, interval: float, cancel: threading.Event, sink: Optional[Sink] = None) -> None:
        """
        Sample every ``interval`` seconds until ``cancel`` is set.

        Cancellation is checked between ticks; a sample that was in flight when
        ``cancel`` was set is dropped instead of handed to the sink.
        """
        sink = sink or log_sink(self.logger)
        self.logger.info(f"Resource monitor starting: interval={interval}s, disk_path={self.disk_path}")
        while not cancel.wait(interval):
            t0 = time.time()
            try:
                sample = self.sample_once()
            except MonitorSampleError as e:
                self.logger.error(f"Resource sample failed: {e} {e.errors}")
                continue
            if cancel.is_set():
                break
            try:
                sink(sample)
            except Exception as e:
                self.logger.exception("Resource sink error: %s", e)
            self.logger.debug(f"Resource monitor tick completed in {time.time() - t0:.2f}s")
        self.logger.info("Stopping monitoring")


def log_sink(logger: logging.Logger) -> Sink:
    """Sink writing one log line per sample, with the numbers as ``extra`` fields."""

    def _emit(sample: ResourceSample) -> None:
        gpu = ", ".join(f"{p:.1f}%" for p in sample.gpu_percent) or "n/a"
        logger.info(
            f"CPU Usage: {sample.cpu_percent:.2f}% | Memory: {sample.memory_percent:.2f}% "
            f"({sample.memory_used}/{sample.memory_total}) | Disk: {sample.disk_percent:.2f}% | GPU: {gpu}",
            extra={"sample": sample.to_dict()},
        )

    return _emit


class QueueSink:
    """Hands samples to a ``queue.Queue``; drops the oldest when full."""

    def __init__(self, q: Optional[queue.Queue] = None) -> None:
        self.queue = q if q is not None else queue.Queue(maxsize=128)

    def __call__(self, sample: ResourceSample) -> None:
        while True:
            try:
                self.queue.put_nowait(sample)
                return
            except queue.Full:
                try:
                    self.queue.get_nowait()
                except queue.Empty:
                    pass


class MonitorTask:
    """Background thread running ``ResourceMonitor.run_periodic`` with its own cancel token."""

    def __init__(
        self,
        monitor: ResourceMonitor,
        interval: float = INTERVAL_SEC,
        sink: Optional[Sink] = None,
    ) -> None:
        self.monitor = monitor
        self.interval = interval
        self.sink = sink
        self.cancel = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> "MonitorTask":
        if self.running:
            return self
        self.cancel.clear()
        self._thread = threading.Thread(
            target=self.monitor.run_periodic,
            args=(self.interval, self.cancel, self.sink),
            name="resource-monitor",
            daemon=True,
        )
        self._thread.start()
        return self

    def stop(self) -> None:
        self.cancel.set()

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the loop to exit. Returns True once it has."""
        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()
