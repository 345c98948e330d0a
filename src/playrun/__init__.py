from .engine import Engine
from .evaluate import evaluate
from .loader import load
from .matrix import expand
from .dag import schedule
from .model import Job, JobInstance, Playbook, RunResult, Stage, Status, SuccessCriteria
from .workflow import convert

__all__ = [
    "Engine", "evaluate", "load", "expand", "schedule", "convert",
    "Job", "JobInstance", "Playbook", "RunResult", "Stage", "Status", "SuccessCriteria",
]
