"""
Named volume management. Volumes are created on first use and otherwise left alone.
"""
import logging
from dataclasses import dataclass
from typing import List, Optional
from ..MODELS.stack_spec import RetentionPolicy, VolumeSpec
from ..RUNNERS.container_runtime import DockerRuntime, PROJECT_LABEL
from ..errors import RuntimeCommandError, StackshipError, VolumeInUse

logger = logging.getLogger(__name__)

RETENTION_LABEL = "io.stackship.retention"

@dataclass
class NamedVolume:
    """
    A volume known to the engine.
    """
    name: str
    engine_name: str
    retention: RetentionPolicy = RetentionPolicy.PERSISTENT

class VolumeStore:
    """
    Durable named storage for a stack. ``ensure`` never recreates an existing
    volume; ``remove`` is the only destructive path and nothing in a
    reconciliation calls it.
    """
    def __init__(self, runtime: DockerRuntime, project: str):
        """
        :param runtime: Engine holding the volumes.
        :param project: Stack project name, used as the volume name prefix.
        """
        self.runtime = runtime
        self.project = project

    def engine_name(self, name: str) -> str:
        """
        Engine-level name of a stack volume, e.g. ``shop_db_data``.
        """
        if name.startswith(f"{self.project}_"):
            return name
        return f"{self.project}_{name}"

    def ensure(self, volume: VolumeSpec) -> NamedVolume:
        """
        Creates the volume if it does not exist yet.

        :param volume: The declared volume.
        :return: The engine volume, new or existing.
        """
        engine_name = self.engine_name(volume.name)
        if self.runtime.volume_exists(engine_name):
            logger.debug("Volume %s exists, reusing", engine_name)
        else:
            logger.info("Creating volume %s", engine_name)
            result = self.runtime.create_volume(engine_name, labels={
                PROJECT_LABEL: self.project,
                RETENTION_LABEL: volume.retention.value,
            })
            if not result.ok:
                raise RuntimeCommandError(
                    f"could not create volume {engine_name}: {result.detail}",
                    returncode=result.returncode, stderr=result.stderr,
                )
        return NamedVolume(name=volume.name, engine_name=engine_name, retention=volume.retention)

    def get(self, name: str) -> Optional[NamedVolume]:
        engine_name = self.engine_name(name)
        if not self.runtime.volume_exists(engine_name):
            return None
        return NamedVolume(name=name, engine_name=engine_name)

    def list_volumes(self) -> List[str]:
        """
        Engine names of every volume labelled with this project.
        """
        return sorted(self.runtime.list_volumes({PROJECT_LABEL: self.project}))

    def remove(self, name: str, retention: RetentionPolicy = RetentionPolicy.PERSISTENT,
               force: bool = False) -> bool:
        """
        Explicitly destroys a volume and its data.

        :param name: Volume name, with or without the project prefix.
        :param retention: Declared retention of the volume.
        :param force: Required to destroy a persistent volume.
        :return: False if the volume did not exist.
        :raises VolumeInUse: If a container still mounts the volume.
        :raises StackshipError: If a persistent volume is removed without force.
        """
        engine_name = self.engine_name(name)
        if not self.runtime.volume_exists(engine_name):
            return False
        if retention == RetentionPolicy.PERSISTENT and not force:
            raise StackshipError(f"volume {engine_name} is persistent; pass force to destroy it")
        users = self.runtime.containers_using_volume(engine_name)
        if users:
            raise VolumeInUse(f"volume {engine_name} is mounted by {', '.join(users)}")
        result = self.runtime.remove_volume(engine_name)
        if not result.ok:
            raise RuntimeCommandError(
                f"could not remove volume {engine_name}: {result.detail}",
                returncode=result.returncode, stderr=result.stderr,
            )
        logger.warning("Removed volume %s", engine_name)
        return True
