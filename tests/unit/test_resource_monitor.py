"""
Unit tests for host resource sampling and the periodic monitor loop.
"""

import queue
import threading
import time
from unittest.mock import MagicMock, patch

import psutil
import pynvml
import pytest

from engine_agent.core.errors import MonitorSampleError
from engine_agent.monitoring import resource_monitor
from engine_agent.monitoring.resource_monitor import (
    MonitorTask,
    NvmlGpuProbe,
    QueueSink,
    ResourceMonitor,
)


class NoGpu:
    def utilization(self):
        return []


class BrokenGpu:
    def utilization(self):
        raise pynvml.NVMLError(pynvml.NVML_ERROR_UNKNOWN)


class TwoGpus:
    def utilization(self):
        return [65.0, 120.0]


@pytest.fixture
def monitor():
    return ResourceMonitor(cpu_window=0.05, gpu_probe=NoGpu())


class TestSampleOnce:

    def test_percentages_in_range(self, monitor):
        sample = monitor.sample_once()

        for pct in (sample.cpu_percent, sample.memory_percent, sample.disk_percent):
            assert 0.0 <= pct <= 100.0
        assert sample.memory_total > 0
        assert sample.disk_total > 0
        assert sample.gpu_percent == ()
        assert dict(sample.errors) == {}

    def test_gpu_failure_reports_no_devices(self):
        monitor = ResourceMonitor(cpu_window=0.05, gpu_probe=BrokenGpu())

        sample = monitor.sample_once()

        assert sample.gpu_percent == ()
        assert "gpu" in sample.errors
        assert sample.memory_total > 0

    def test_gpu_values_are_clamped(self):
        monitor = ResourceMonitor(cpu_window=0.05, gpu_probe=TwoGpus())

        assert monitor.sample_once().gpu_percent == (65.0, 100.0)

    def test_one_failing_metric_does_not_abort_others(self, monitor):
        with patch.object(resource_monitor.psutil, "virtual_memory", side_effect=psutil.Error("no /proc")):
            sample = monitor.sample_once()

        assert sample.memory_total == 0
        assert sample.memory_percent == 0.0
        assert "memory" in sample.errors
        assert sample.disk_total > 0

    def test_all_host_metrics_failing_raises(self, monitor):
        err = OSError("unavailable")
        with patch.object(resource_monitor.psutil, "cpu_percent", side_effect=err), \
                patch.object(resource_monitor.psutil, "virtual_memory", side_effect=err), \
                patch.object(resource_monitor.psutil, "disk_usage", side_effect=err):
            with pytest.raises(MonitorSampleError) as exc:
                monitor.sample_once()

        assert set(exc.value.errors) == {"cpu", "memory", "disk"}

    def test_sample_is_immutable(self, monitor):
        sample = monitor.sample_once()

        with pytest.raises(AttributeError):
            sample.cpu_percent = 1.0


class TestNvmlProbe:

    def test_missing_library_means_no_devices(self):
        with patch.object(resource_monitor.pynvml, "nvmlInit",
                          side_effect=pynvml.NVMLError(pynvml.NVML_ERROR_LIBRARY_NOT_FOUND)):
            assert NvmlGpuProbe().utilization() == []

    def test_reads_each_device(self):
        rates = MagicMock()
        rates.gpu = 42
        with patch.object(resource_monitor.pynvml, "nvmlInit"), \
                patch.object(resource_monitor.pynvml, "nvmlShutdown") as shutdown, \
                patch.object(resource_monitor.pynvml, "nvmlDeviceGetCount", return_value=2), \
                patch.object(resource_monitor.pynvml, "nvmlDeviceGetHandleByIndex"), \
                patch.object(resource_monitor.pynvml, "nvmlDeviceGetUtilizationRates", return_value=rates):
            assert NvmlGpuProbe().utilization() == [42.0, 42.0]

        shutdown.assert_called_once()


class TestPeriodic:

    def test_emits_until_cancelled(self, monitor):
        cancel = threading.Event()
        sink = QueueSink()
        thread = threading.Thread(target=monitor.run_periodic, args=(0.01, cancel, sink))
        thread.start()

        first = sink.queue.get(timeout=5)
        cancel.set()
        thread.join(timeout=5)

        assert not thread.is_alive()
        assert 0.0 <= first.cpu_percent <= 100.0

    def test_cancel_before_first_tick(self, monitor):
        cancel = threading.Event()
        cancel.set()
        sink = MagicMock()

        monitor.run_periodic(60, cancel, sink)

        sink.assert_not_called()

    def test_in_flight_sample_is_dropped_on_cancel(self, monitor):
        cancel = threading.Event()
        sink = MagicMock()
        original = monitor.sample_once

        def sample_then_cancel():
            sample = original()
            cancel.set()
            return sample

        monitor.sample_once = sample_then_cancel
        monitor.run_periodic(0.01, cancel, sink)

        sink.assert_not_called()

    def test_sink_errors_do_not_stop_loop(self, monitor):
        cancel = threading.Event()
        calls = []

        def flaky(sample):
            calls.append(sample)
            if len(calls) == 1:
                raise RuntimeError("sink down")
            cancel.set()

        monitor.run_periodic(0.01, cancel, flaky)

        assert len(calls) == 2

    def test_monitor_task_join(self, monitor):
        q = queue.Queue()
        task = MonitorTask(monitor, interval=0.01, sink=QueueSink(q)).start()

        q.get(timeout=5)
        task.stop()

        assert task.join(timeout=5)
        assert not task.running


def test_queue_sink_drops_oldest_when_full():
    sink = QueueSink(queue.Queue(maxsize=2))
    for i in range(3):
        sink(i)

    assert [sink.queue.get_nowait() for _ in range(2)] == [1, 2]


def test_sample_to_dict(monitor):
    data = monitor.sample_once().to_dict()

    assert data["gpu_percent"] == []
    assert data["timestamp"] <= time.time()


def test_monitor_task_default_interval_ignores_environment(monkeypatch, monitor):
    monkeypatch.setenv("ENGINE_AGENT_MONITOR_INTERVAL", "not-a-number")

    assert MonitorTask(monitor).interval == resource_monitor.INTERVAL_SEC == 30.0
