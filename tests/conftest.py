import dataclasses
import json
import re

from unittest import mock

import pytest

from ansible_collections.workstation.storage.plugins.module_utils.provisioning import (
    GIB,
    Disk,
    FormatFailed,
    PartitionCreateFailed,
    ProvisioningTarget,
    ShrinkFailed,
    SystemVolume,
    Volume,
)


MUTATIONS = ("shrink", "create", "format")


def system_volume(size: int, size_min: int, size_max: int | None = None, disk_number: int = 0) -> SystemVolume:
    return SystemVolume(
        letter="C",
        size=size,
        label="Windows",
        filesystem="NTFS",
        free=size // 2,
        disk_number=disk_number,
        partition_number=3,
        size_min=size_min,
        size_max=size if size_max is None else size_max,
    )


#
# In-memory disk implementing both the Inspector and the Builder sides of the pipeline.
#
class FakeDisk:
    def __init__(self, size: int, system: SystemVolume, volumes: tuple[Volume, ...] = (), fail: tuple[str, ...] = ()):
        self.size = size
        self.system = system
        self.extra = list(volumes)
        self.fail = set(fail)
        self.calls = []

    @property
    def mutations(self) -> list[str]:
        return [call for call in self.calls if call in MUTATIONS]

    def disk(self) -> Disk:
        self.calls.append("disk")
        return Disk(number=0, size=self.size)

    def volumes(self) -> tuple[Volume, ...]:
        self.calls.append("volumes")
        return (self.system, *self.extra)

    def system_volume(self) -> SystemVolume:
        self.calls.append("system_volume")
        return self.system

    def shrink(self, system, plan) -> None:
        self.calls.append("shrink")
        if "shrink" in self.fail:
            raise ShrinkFailed("Resize-Partition refused")

        self.system = dataclasses.replace(system, size=plan.new_size)

    def settle(self) -> None:
        self.calls.append("settle")

    def create(self, disk, size, letter) -> Volume:
        self.calls.append("create")
        if "create" in self.fail:
            raise PartitionCreateFailed("New-Partition refused")

        partition = Volume(letter=letter, size=size, disk_number=disk.number)
        self.extra.append(partition)
        return partition

    def format(self, partition, target) -> Volume:
        self.calls.append("format")
        if "format" in self.fail:
            raise FormatFailed("Formatting failed, partition {}: is left unformatted".format(partition.letter))

        formatted = dataclasses.replace(partition, label=target.label, filesystem=target.filesystem)
        self.extra[self.extra.index(partition)] = formatted
        return formatted


#
# Scripted Windows host standing in for ActionBase._execute_module. Answers the PowerShell snippets sent through
#  ansible.windows.win_shell and tracks disk state across calls.
#
class FakeWindowsHost:
    def __init__(
        self,
        disk_size: int,
        system_size: int,
        size_min: int,
        size_max: int | None = None,
        volumes: tuple[dict, ...] = (),
        fail: tuple[str, ...] = (),
    ):
        self.disk_size = disk_size
        self.system = dict(
            DiskNumber=0,
            PartitionNumber=3,
            DriveLetter="C",
            FileSystemLabel="Windows",
            FileSystem="NTFS",
            Size=system_size,
            SizeRemaining=system_size // 2,
            SizeMin=size_min,
            SizeMax=system_size if size_max is None else size_max,
        )
        self.volumes = [
            dict(
                DriveLetter="\u0000",
                FileSystemLabel="Recovery",
                FileSystem="NTFS",
                Size=GIB,
                SizeRemaining=0,
                DiskNumber=0,
            ),
            *volumes,
        ]
        self.fail = set(fail)
        self.scripts = []
        self.check_modes = []
        self.action = None

    @property
    def mutations(self) -> list[str]:
        keywords = ("Resize-Partition", "New-Partition", "Format-Volume")
        return [script for script in self.scripts if any(keyword in script for keyword in keywords)]

    @staticmethod
    def _ok(payload=None) -> dict:
        return dict(rc=0, changed=True, stdout=json.dumps(payload) if payload is not None else "", stderr="")

    @staticmethod
    def _failed(stderr: str) -> dict:
        return dict(rc=1, failed=True, stdout="", stderr=stderr, msg="non-zero return code")

    def __call__(self, module_name: str, module_args: dict, task_vars: dict) -> dict:
        assert module_name == "ansible.windows.win_shell"

        script = module_args["_raw_params"]
        self.scripts.append(script)
        if self.action is not None:
            self.check_modes.append(self.action._task.check_mode)

        for keyword, step, handler in (
            ("Get-PartitionSupportedSize", "system", self._system),
            ("Get-Disk", "disk", self._disk),
            ("Resize-Partition", "shrink", self._resize),
            ("New-Partition", "create", self._create),
            ("Format-Volume", "format", self._format),
            ("Get-Volume", "volumes", self._volumes),
        ):
            if keyword in script:
                if step in self.fail:
                    return self._failed("{} failed".format(keyword))

                return handler(script)

        raise AssertionError("Unexpected script: {}".format(script))

    def _disk(self, script: str) -> dict:
        return self._ok(dict(Number=0, Size=self.disk_size))

    def _system(self, script: str) -> dict:
        return self._ok(self.system)

    def _volumes(self, script: str) -> dict:
        return self._ok([self.system, *self.volumes])

    def _resize(self, script: str) -> dict:
        self.system["Size"] = int(re.search(r"-Size (\d+)", script).group(1))
        return self._ok()

    def _create(self, script: str) -> dict:
        disk, size, letter = re.search(r"-DiskNumber (\d+) -Size (\d+) -DriveLetter (\w)", script).groups()
        self.volumes.append(
            dict(DriveLetter=letter, FileSystemLabel="", FileSystem=None, Size=int(size), DiskNumber=int(disk)),
        )
        return self._ok(dict(DriveLetter=letter, Size=int(size)))

    def _format(self, script: str) -> dict:
        pattern = r"-DriveLetter (\w) -FileSystem (\w+) -NewFileSystemLabel '([^']*)'"
        letter, fs, label = re.search(pattern, script).groups()
        volume = next(volume for volume in self.volumes if volume["DriveLetter"] == letter)
        volume.update(FileSystemLabel=label, FileSystem=fs, SizeRemaining=volume["Size"])
        return self._ok(volume)


@pytest.fixture
def target() -> ProvisioningTarget:
    return ProvisioningTarget()


@pytest.fixture(autouse=True)
def no_settle_delay(monkeypatch) -> list[float]:
    delays = []
    monkeypatch.setattr("time.sleep", delays.append)
    return delays


@pytest.fixture
def make_action():
    def factory(module, args: dict | None = None, variables: dict | None = None, check_mode: bool = False):
        task = mock.MagicMock()
        task.args = dict(args or {})
        task.vars = dict(variables or {})
        task.check_mode = check_mode

        templar = mock.MagicMock()
        templar.template.side_effect = lambda value: value

        return module.ActionModule(
            task=task,
            connection=mock.MagicMock(),
            play_context=mock.MagicMock(),
            loader=mock.MagicMock(),
            templar=templar,
            shared_loader_obj=mock.MagicMock(),
        )

    return factory


@pytest.fixture
def attach_host():
    def attach(action, host: FakeWindowsHost) -> FakeWindowsHost:
        host.action = action
        action._execute_module = host
        return host

    return attach


@pytest.fixture
def make_disk():
    def factory(
        disk_gib: int,
        system_gib: int,
        min_gib: int,
        max_gib: int | None = None,
        volumes: tuple[Volume, ...] = (),
        fail: tuple[str, ...] = (),
        disk_number: int = 0,
    ) -> FakeDisk:
        system = system_volume(
            size=system_gib * GIB,
            size_min=min_gib * GIB,
            size_max=None if max_gib is None else max_gib * GIB,
            disk_number=disk_number,
        )
        return FakeDisk(disk_gib * GIB, system, volumes=volumes, fail=fail)

    return factory


@pytest.fixture
def make_host():
    def factory(
        disk_gib: int,
        system_gib: int,
        min_gib: int,
        max_gib: int | None = None,
        volumes: tuple[dict, ...] = (),
        fail: tuple[str, ...] = (),
    ) -> FakeWindowsHost:
        return FakeWindowsHost(
            disk_size=disk_gib * GIB,
            system_size=system_gib * GIB,
            size_min=min_gib * GIB,
            size_max=None if max_gib is None else max_gib * GIB,
            volumes=volumes,
            fail=fail,
        )

    return factory
