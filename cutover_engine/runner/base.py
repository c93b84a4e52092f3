# cutover_engine/runner/base.py

from abc import ABC, abstractmethod

from cutover_engine.core.models import Instance


class InstanceRunner(ABC):
    """
    Capability supplied by the embedding system to run the singleton worker.
    """

    @abstractmethod
    def start(self, instance: Instance) -> Instance:
        """
        Launch the instance at instance.version.

        Returns the instance with external_id / metadata filled in.
        Raises InstanceError if the launch failed.
        """
        raise NotImplementedError

    @abstractmethod
    def stop(self, instance: Instance) -> None:
        """
        Gracefully stop the instance and release its process.
        Stopping an instance that is already gone must succeed.
        Raises InstanceError if it is still running afterwards.
        """
        raise NotImplementedError
