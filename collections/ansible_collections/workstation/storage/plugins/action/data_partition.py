#
# workstation.storage.data_partition - provision the secondary data partition on a Windows workstation.
#
# Follow the project README for more information.
#
import typing

import dataclasses
import json
import time

from ansible.plugins.action import ActionBase
from ansible.errors import AnsibleActionFail, AnsibleError
from ansible.utils.display import Display

from ansible.constants import COLOR_CHANGED, COLOR_OK, COLOR_SKIP

from ansible_collections.workstation.util.types import RawResult, TaskVars
from ansible_collections.workstation.util.specs import validate_spec
from ansible_collections.workstation.storage.plugins.module_utils.provisioning import (
    FACT_NAME,
    GIB,
    Disk,
    FormatFailed,
    InspectionFailed,
    Outcome,
    OutcomeKind,
    PartitionCreateFailed,
    ProvisioningTarget,
    ShrinkFailed,
    ShrinkPlan,
    SystemVolume,
    Volume,
    humanize,
    parse_size,
    provision,
    report,
)


ARGS_SPEC = {
    "disk": dict(type="int", default=0),
    "strict": dict(type="bool", default=False),
}

TARGET_SPEC = {
    "size": dict(type="str", default="250G"),
    "min_disk_size": dict(type="str", default="800G"),
    "label": dict(type="str", default="Data"),
    "filesystem": dict(type="str", default="NTFS", choices=["NTFS", "ReFS", "exFAT", "FAT32"]),
    "tolerance": dict(type="str", default="10G"),
    "margin": dict(type="str", default="5G"),
}

#
# Format-Volume refuses to create FAT32 volumes above 32 GB.
#
FAT32_MAX_SIZE = 32 * GIB

VARS_SPEC = {
    "target": {
        "type": "dict",
        "options": TARGET_SPEC,
        "apply_defaults": True,
    },
}


def _quote(value: str) -> str:
    #
    # PowerShell single-quoted literal, the only escape is a doubled quote.
    #
    return "'{}'".format(value.replace("'", "''"))


def _letter(raw: typing.Any) -> str | None:
    #
    # Get-Volume reports a NUL character for volumes without a letter; some PowerShell builds serialize it as a number.
    #
    if isinstance(raw, int):
        raw = chr(raw) if raw > 0 else ""

    letter = str(raw or "").replace("\x00", "").strip().rstrip(":").upper()
    return letter or None


class ModuleExecutor:
    def __init__(self, action: ActionBase, task_vars: TaskVars):
        self._action = action
        self._display = action._display
        self._check_mode = action._task.check_mode
        self._task_vars = task_vars

    def _force_run_script(self, script: str) -> tuple[bool, dict]:
        #
        # In order to force _execute_module to complete win_shell regardless of the check mode, the check_mode of the
        #  current action task needs to be set to False.
        #
        self._action._task.check_mode = False
        try:
            result = self._action._execute_module(
                module_name="ansible.windows.win_shell",
                module_args=dict(_raw_params=script),
                task_vars=self._task_vars,
            )
            return result.get("failed") is True or result.get("rc", 0) != 0, result
        finally:
            self._action._task.check_mode = self._check_mode

    def _do_script(self, script: str) -> str:
        failed, result = self._force_run_script(script)
        if failed:
            raise AnsibleActionFail(
                "PowerShell failed ({}): {}".format(
                    script.strip().split()[0],
                    (result.get("stderr") or result.get("msg") or "").strip() or result,
                ),
            )

        return result.get("stdout", "")

    def query(self, script: str) -> typing.Any:
        try:
            stdout = self._do_script(script)
        except AnsibleActionFail as fail:
            raise InspectionFailed(fail.message) from fail

        try:
            return json.loads(stdout)
        except json.JSONDecodeError as exc:
            raise InspectionFailed("Unparseable PowerShell output '{}': {}".format(stdout.strip(), exc)) from exc

    def script(self, script: str):
        #
        # Closure class allows to omit passing too many arguments in a handy OOP way.
        #
        class ModuleExecutorScript:
            @classmethod
            def _print_report(cls, report: str) -> None:
                if self._check_mode:
                    self._display.display("would {}".format(report), COLOR_OK)
                else:
                    self._display.display(report, COLOR_CHANGED)

            #
            # Execute the provided script if not running in the check mode. Only print a message otherwise.
            #
            @classmethod
            def run_as_unsafe(cls, report: str | None = None) -> str:
                stdout = "" if self._check_mode else self._do_script(script)

                report and cls._print_report(report)

                return stdout

        return ModuleExecutorScript()


class DiskInspector:
    DISK_SCRIPT = "ConvertTo-Json -Compress -InputObject (Get-Disk -Number {number} | Select-Object Number, Size)"

    #
    # Wrap into an array, otherwise ConvertTo-Json emits a bare object for single-volume hosts. Volumes without a
    #  partition (optical, network) report no DiskNumber.
    #
    VOLUMES_SCRIPT = (
        "ConvertTo-Json -Compress -InputObject @(Get-Volume | Select-Object "
        "@{n='DriveLetter';e={[string]$_.DriveLetter}}, FileSystemLabel, FileSystem, Size, SizeRemaining, "
        "@{n='DiskNumber';e={($_ | Get-Partition -ErrorAction SilentlyContinue "
        "| Select-Object -First 1).DiskNumber}})"
    )

    SYSTEM_SCRIPT = """
        $partition = Get-Partition -DriveLetter $env:SystemDrive.TrimEnd(':')
        $supported = Get-PartitionSupportedSize -DiskNumber $partition.DiskNumber -PartitionNumber $partition.PartitionNumber
        $volume = Get-Volume -Partition $partition
        ConvertTo-Json -Compress -InputObject ([pscustomobject]@{
            DiskNumber = $partition.DiskNumber
            PartitionNumber = $partition.PartitionNumber
            DriveLetter = [string]$partition.DriveLetter
            FileSystemLabel = $volume.FileSystemLabel
            FileSystem = $volume.FileSystem
            Size = $partition.Size
            SizeRemaining = $volume.SizeRemaining
            SizeMin = $supported.SizeMin
            SizeMax = $supported.SizeMax
        })
    """

    def __init__(self, display: Display, modexec: ModuleExecutor, number: int):
        self._display = display
        self._modexec = modexec
        self._disk_number = number

    @staticmethod
    def _number(payload: dict, key: str) -> int:
        if not isinstance(payload, dict) or key not in payload:
            raise InspectionFailed("PowerShell output lacks '{}': {}".format(key, payload))

        try:
            return int(payload[key] or 0)
        except (TypeError, ValueError) as exc:
            raise InspectionFailed("PowerShell reported non-numeric '{}': {}".format(key, payload[key])) from exc

    def _to_volume(self, payload: dict) -> Volume:
        if not isinstance(payload, dict):
            raise InspectionFailed("Expected a volume object, got: {}".format(payload))

        return Volume(
            letter=_letter(payload.get("DriveLetter")),
            size=self._number(payload, "Size"),
            label=payload.get("FileSystemLabel") or "",
            filesystem=payload.get("FileSystem") or None,
            free=int(payload.get("SizeRemaining") or 0),
            disk_number=None if payload.get("DiskNumber") is None else self._number(payload, "DiskNumber"),
        )

    def disk(self) -> Disk:
        payload = self._modexec.query(self.DISK_SCRIPT.format(number=int(self._disk_number)))
        disk = Disk(number=self._number(payload, "Number"), size=self._number(payload, "Size"))

        self._display.display("inspect: (disk {}) => '{}'".format(disk.number, humanize(disk.size)), COLOR_OK)
        return disk

    def volumes(self) -> tuple[Volume, ...]:
        payload = self._modexec.query(self.VOLUMES_SCRIPT)
        if not isinstance(payload, list):
            raise InspectionFailed("Expected a list of volumes, got: {}".format(payload))

        volumes = tuple(map(self._to_volume, payload))
        for volume in volumes:
            self._display.vvv(
                "inspect: (volume {}) => '{}, {}'".format(volume.letter or "-", volume.label, humanize(volume.size)),
            )

        return volumes

    def system_volume(self) -> SystemVolume:
        payload = self._modexec.query(self.SYSTEM_SCRIPT)
        volume = self._to_volume(payload)

        system = SystemVolume(
            letter=volume.letter,
            size=volume.size,
            label=volume.label,
            filesystem=volume.filesystem,
            free=volume.free,
            disk_number=self._number(payload, "DiskNumber"),
            partition_number=self._number(payload, "PartitionNumber"),
            size_min=self._number(payload, "SizeMin"),
            size_max=self._number(payload, "SizeMax"),
        )

        self._display.display(
            "inspect: (system {}) => '{}, supported {} - {}, unallocated {}'".format(
                system.letter,
                humanize(system.size),
                humanize(system.size_min),
                humanize(system.size_max),
                humanize(system.unallocated),
            ),
            COLOR_OK,
        )
        return system


class PartitionBuilder:
    #
    # The disk management layer needs a moment before freed space shows up in subsequent reads.
    #
    SETTLE_DELAY = 10

    CREATE_SCRIPT = (
        "ConvertTo-Json -Compress -InputObject (New-Partition -DiskNumber {disk} -Size {size} -DriveLetter {letter} "
        "| Select-Object @{{n='DriveLetter';e={{[string]$_.DriveLetter}}}}, Size)"
    )

    FORMAT_SCRIPT = (
        "ConvertTo-Json -Compress -InputObject (Format-Volume -DriveLetter {letter} -FileSystem {fs} "
        "-NewFileSystemLabel {label} -Confirm:$false -Force | Select-Object "
        "@{{n='DriveLetter';e={{[string]$_.DriveLetter}}}}, FileSystemLabel, FileSystem, Size, SizeRemaining)"
    )

    def __init__(self, display: Display, modexec: ModuleExecutor):
        self._display = display
        self._modexec = modexec
        self._check_mode = modexec._check_mode

    @staticmethod
    def _parse(stdout: str, error: type[AnsibleError], context: str) -> dict:
        try:
            payload = json.loads(stdout)
        except json.JSONDecodeError as exc:
            raise error("{}: unparseable PowerShell output '{}'".format(context, stdout.strip())) from exc

        if not isinstance(payload, dict):
            raise error("{}: unexpected PowerShell output {}".format(context, payload))

        return payload

    def shrink(self, system: SystemVolume, plan: ShrinkPlan) -> None:
        script = "Resize-Partition -DiskNumber {} -PartitionNumber {} -Size {}".format(
            system.disk_number,
            system.partition_number,
            plan.new_size,
        )

        command = self._modexec.script(script)
        try:
            command.run_as_unsafe(
                report="shrink: ({}) => '{} -> {}'".format(
                    system.letter,
                    humanize(system.size),
                    humanize(plan.new_size),
                ),
            )
        except AnsibleActionFail as fail:
            raise ShrinkFailed("Shrinking {} failed: {}".format(system.letter, fail.message)) from fail

    def settle(self) -> None:
        if self._check_mode:
            return

        self._display.display("settle: (disk) => '{} second(s)'".format(self.SETTLE_DELAY), COLOR_OK)
        time.sleep(self.SETTLE_DELAY)

    def create(self, disk: Disk, size: int, letter: str) -> Volume:
        command = self._modexec.script(self.CREATE_SCRIPT.format(disk=disk.number, size=size, letter=letter))
        try:
            stdout = command.run_as_unsafe(
                report="create: ({}:) => 'disk {}, {}'".format(letter, disk.number, humanize(size)),
            )
        except AnsibleActionFail as fail:
            raise PartitionCreateFailed("Creating partition {}: failed: {}".format(letter, fail.message)) from fail

        if self._check_mode:
            return Volume(letter=letter, size=size, disk_number=disk.number)

        payload = self._parse(stdout, PartitionCreateFailed, "Creating partition {}:".format(letter))
        return Volume(
            letter=_letter(payload.get("DriveLetter")) or letter,
            size=int(payload.get("Size") or size),
            disk_number=disk.number,
        )

    def format(self, partition: Volume, target: ProvisioningTarget) -> Volume:
        script = self.FORMAT_SCRIPT.format(
            letter=partition.letter,
            fs=target.filesystem,
            label=_quote(target.label),
        )

        #
        # No rollback on failure: the raw partition stays behind for manual cleanup.
        #
        residue = "the {} partition at {}: is left unformatted and needs manual cleanup".format(
            humanize(partition.size),
            partition.letter,
        )

        command = self._modexec.script(script)
        try:
            stdout = command.run_as_unsafe(
                report="format: ({}:) => '{}, {}'".format(partition.letter, target.filesystem, target.label),
            )
        except AnsibleActionFail as fail:
            raise FormatFailed("Formatting failed, {}: {}".format(residue, fail.message)) from fail

        if self._check_mode:
            return dataclasses.replace(partition, label=target.label, filesystem=target.filesystem)

        payload = self._parse(stdout, FormatFailed, "Formatting failed, {}".format(residue))
        return Volume(
            letter=_letter(payload.get("DriveLetter")) or partition.letter,
            size=int(payload.get("Size") or partition.size),
            label=payload.get("FileSystemLabel") or target.label,
            filesystem=payload.get("FileSystem") or target.filesystem,
            free=int(payload.get("SizeRemaining") or 0),
            disk_number=partition.disk_number,
        )


class ActionModule(ActionBase):
    def _build_target(self, raw_target: dict) -> ProvisioningTarget:
        try:
            sizes = {
                key: parse_size(raw_target[key]) for key in ("size", "min_disk_size", "tolerance", "margin")
            }
        except AnsibleError as error:
            raise AnsibleActionFail("Invalid provisioning target: {}".format(error.message)) from error

        if sizes["tolerance"] >= sizes["size"]:
            raise AnsibleActionFail("Tolerance must be smaller than the target size")

        if raw_target["filesystem"] == "FAT32" and sizes["size"] > FAT32_MAX_SIZE:
            raise AnsibleActionFail(
                "FAT32 volumes cannot exceed {}, got {}".format(humanize(FAT32_MAX_SIZE), humanize(sizes["size"]))
            )

        label = raw_target["label"]
        if not label or len(label) > 32:
            raise AnsibleActionFail("Volume label '{}' must be 1-32 chars long".format(label))

        return ProvisioningTarget(label=label, filesystem=raw_target["filesystem"], **sizes)

    def _display_outcome(self, outcome: Outcome) -> None:
        match outcome.kind:
            case OutcomeKind.FAILED:
                self._display.warning("data_partition: {} ({})".format(outcome.reason, outcome.error))
                return
            case OutcomeKind.CREATED:
                tag, color = "changed", COLOR_CHANGED
            case OutcomeKind.SKIPPED_TOO_SMALL:
                tag, color = "skipped", COLOR_SKIP
            case _:
                tag, color = "ok", COLOR_OK

        self._display.display("{}: ({}) => '{}'".format(tag, outcome.kind, outcome.reason), color)

    def run(self, tmp: None = None, task_vars: TaskVars = None) -> RawResult:
        #
        # Validate basic syntax errors. These fail the task, unlike provisioning failures.
        #
        _, raw_args = self.validate_argument_spec(ARGS_SPEC)
        raw_vars = validate_spec(VARS_SPEC, self._templar.template(self._task.vars))
        target = self._build_target(raw_vars["target"])

        modexec = ModuleExecutor(self, task_vars or {})
        inspector = DiskInspector(self._display, modexec, raw_args["disk"])
        builder = PartitionBuilder(self._display, modexec)

        outcome = provision(inspector, builder, target)
        self._display_outcome(outcome)

        failed = outcome.kind is OutcomeKind.FAILED
        result = RawResult(
            changed=outcome.kind is OutcomeKind.CREATED,
            skipped=outcome.kind is OutcomeKind.SKIPPED_TOO_SMALL,
            failed=failed and raw_args["strict"],
            msg=outcome.reason,
            outcome=report(outcome),
        )

        #
        # Always publish the fact, a cached or earlier value must not outlive an unsuccessful run.
        #
        result["ansible_facts"] = {FACT_NAME: outcome.letter if outcome.provisioned else None}

        return result
