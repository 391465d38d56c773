from fsr.models import ProcessDescriptor
from fsr.processes import ProcessSupervisor
from fsr.runtime import CONVERGED, UNCHANGED


def _worker():
    return ProcessDescriptor(name="worker", detection="pgrep -f 'node worker.js'", start_command="nohup node worker.js &")


def test_running_process_is_left_alone(executor):
    executor.on("pgrep -f 'node worker.js'", stdout="1234\n")
    sup = ProcessSupervisor(executor, grace_s=0)

    assert sup.ensure_running(_worker()).status == UNCHANGED
    assert executor.spawned == []


def test_stopped_process_is_started_after_grace(executor):
    slept = []
    executor.on("pgrep", returncode=1)
    sup = ProcessSupervisor(executor, grace_s=2.0, sleep=slept.append)

    outcome = sup.ensure_running(_worker())

    assert outcome.status == CONVERGED
    assert executor.spawned == [("nohup node worker.js &", None)]
    assert slept == [2.0]


def test_empty_detection_output_means_stopped(executor):
    executor.on("pgrep", stdout="   \n")
    assert ProcessSupervisor(executor).is_running(_worker()) is False
