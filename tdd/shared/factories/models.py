"""
Model factories for creating test data.

These factories create SQLAlchemy model instances for use in tests.
RunnerFactory takes a ``states`` list of (RunnerStatus, datetime) pairs and
builds the lifecycle from it, since a runner's state only exists as events.
"""
import sys
from datetime import datetime
from pathlib import Path

import factory
from faker import Faker

# Add backend to path for imports
backend_path = Path(__file__).parent.parent.parent.parent / "backend"
sys.path.insert(0, str(backend_path))

from autoscaler.models import Job, JobState, Runner, RunnerLifecycle, RunnerStatus

from .base import BaseFactory, generate_hostname

fake = Faker()


class RunnerFactory(BaseFactory):
    """Factory for creating Runner instances."""

    class Meta:
        model = Runner
        exclude = ("states",)

    hostname = factory.LazyFunction(generate_hostname)
    cloud = "cloud-a"
    size = "size-s"
    arch = "x64"
    profile = "default"
    owner = "acme"
    is_custom = False
    is_online = False
    ipv4 = factory.LazyFunction(lambda: fake.ipv4_private())
    cloud_server_id = factory.Sequence(lambda n: f"cloud-a-srv-{n}")
    stuck_job_replacement = False
    use_private_network = False
    job_id = None

    states = factory.LazyFunction(lambda: [(RunnerStatus.CREATION_QUEUED, datetime.utcnow())])
    lifecycle = factory.LazyAttribute(
        lambda o: [
            RunnerLifecycle(status=status.value, event_time=when, event=f"test {status.value}")
            for status, when in o.states
        ]
    )

    class Params:
        """Parameters for creating runners in specific states."""

        online = factory.Trait(is_online=True)
        queued = factory.Trait(
            hostname=None,
            cloud=None,
            cloud_server_id=None,
            ipv4=None,
        )


class JobFactory(BaseFactory):
    """Factory for creating Job instances."""

    class Meta:
        model = Job

    github_job_id = factory.Sequence(lambda n: 5_000_000 + n)
    repository = "acme/app"
    owner = "acme"
    state = JobState.QUEUED.value
    queue_time = factory.LazyFunction(datetime.utcnow)
    in_progress_time = None
    complete_time = None
    job_url = factory.LazyAttribute(lambda o: f"https://api.github.com/repos/{o.repository}/actions/jobs/{o.github_job_id}")
    requested_size = "size-s"
    requested_profile = "default"
    runner_id = None
    orphan = False

    class Params:
        throttled = factory.Trait(state=JobState.THROTTLED.value)
        in_progress = factory.Trait(
            state=JobState.IN_PROGRESS.value,
            in_progress_time=factory.LazyFunction(datetime.utcnow),
        )
