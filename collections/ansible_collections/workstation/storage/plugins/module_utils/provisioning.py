#
# workstation.storage provisioning - decision logic behind the secondary data partition.
#
# Everything here is free of I/O. Reads and mutations are delegated to an Inspector and a Builder supplied by the
#  caller (the data_partition action plugin talks PowerShell, tests use an in-memory disk).
#
import typing

import collections
import dataclasses
import enum
import string

from ansible.errors import AnsibleError


GIB = 1024**3

#
# Binary and decimal units. Unit-less literals are plain byte counts.
#
UNITS = {
    "K": 1024,
    "KB": 1000,
    "M": 1024**2,
    "MB": 1000**2,
    "G": 1024**3,
    "GB": 1000**3,
    "T": 1024**4,
    "TB": 1000**4,
    "KIB": 1024,
    "MIB": 1024**2,
    "GIB": 1024**3,
    "TIB": 1024**4,
}

#
# A, B and C are reserved for floppies and the system volume.
#
ELIGIBLE_LETTERS = tuple(string.ascii_uppercase[3:])

#
# Fact consumed by the file staging step and any later task that needs the data drive.
#
FACT_NAME = "workstation_data_drive"


def parse_size(value: str | int) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        size = value
    else:
        literal = str(value).strip().upper()
        suffix, multiplier = next(
            ((unit, mult) for unit, mult in UNITS.items() if literal.endswith(unit)),
            ("", 1),
        )

        base = literal.removesuffix(suffix).strip()
        if not base.isdigit():
            raise AnsibleError("Failed to parse size expression '{}': non-numeric base".format(value))

        size = int(base) * multiplier

    if size <= 0:
        raise AnsibleError("Failed to process size literal '{}': negative or zero size".format(value))

    return size


def humanize(num: int | float) -> str:
    for unit in ("B", "KiB", "MiB", "GiB"):
        if abs(num) < 1024:
            return f"{num:.2f} {unit}"

        num /= 1024
    else:
        return f"{num:.2f} TiB"


@dataclasses.dataclass(frozen=True)
class Disk:
    number: int
    size: int


@dataclasses.dataclass(frozen=True, kw_only=True)
class Volume:
    #
    # None for volumes without a drive letter (recovery, EFI, unformatted residue).
    #
    letter: str | None
    size: int
    label: str = ""
    filesystem: str | None = None
    free: int = 0
    #
    # None for volumes that do not sit on a partition (optical media, virtual drives).
    #
    disk_number: int | None = None

    @property
    def used(self) -> int:
        return self.size - self.free


@dataclasses.dataclass(frozen=True, kw_only=True)
class SystemVolume(Volume):
    disk_number: int
    partition_number: int
    #
    # Supported size range as reported by the disk subsystem. The minimum accounts for blocks that cannot be
    #  relocated (page file, hibernation file, metadata), the maximum includes contiguous unallocated space.
    #
    size_min: int
    size_max: int

    @property
    def unallocated(self) -> int:
        return self.size_max - self.size


@dataclasses.dataclass(frozen=True, kw_only=True)
class ProvisioningTarget:
    size: int = 250 * GIB
    min_disk_size: int = 800 * GIB
    label: str = "Data"
    filesystem: str = "NTFS"
    #
    # Partitioning tools realize slightly different sizes than requested due to alignment, so identity is a window.
    #
    tolerance: int = 10 * GIB
    #
    # Shrinking by exactly the target size is unreliable; overshoot by a fixed buffer instead.
    #
    margin: int = 5 * GIB

    @property
    def window(self) -> tuple[int, int]:
        return self.size - self.tolerance, self.size + self.tolerance

    def matches(self, volume: Volume) -> bool:
        lower, upper = self.window
        return volume.label == self.label and lower <= volume.size <= upper


@dataclasses.dataclass(frozen=True)
class ShrinkPlan:
    amount: int
    new_size: int


class OutcomeKind(enum.StrEnum):
    SKIPPED_TOO_SMALL = "skipped-too-small"
    SKIPPED_ALREADY_EXISTS = "skipped-already-exists"
    CREATED = "created"
    FAILED = "failed"


@dataclasses.dataclass(frozen=True)
class Outcome:
    kind: OutcomeKind
    reason: str
    letter: str | None = None
    size: int | None = None
    #
    # Failure kind (see ProvisioningError.kind), only set for failed outcomes.
    #
    error: str | None = None

    @property
    def provisioned(self) -> bool:
        return self.kind in (OutcomeKind.CREATED, OutcomeKind.SKIPPED_ALREADY_EXISTS)


class ProvisioningError(AnsibleError):
    kind = "provisioning-failed"


class InspectionFailed(ProvisioningError):
    kind = "inspection-failed"


class UnsupportedLayout(ProvisioningError):
    kind = "unsupported-layout"


class InsufficientShrinkSpace(ProvisioningError):
    kind = "insufficient-shrink-space"


class ShrinkFailed(ProvisioningError):
    kind = "shrink-failed"


class NoAvailableIdentifier(ProvisioningError):
    kind = "no-available-identifier"


class PartitionCreateFailed(ProvisioningError):
    kind = "partition-create-failed"


class FormatFailed(ProvisioningError):
    kind = "format-failed"


def is_eligible(disk: Disk, target: ProvisioningTarget) -> bool:
    return disk.size >= target.min_disk_size


def find_existing(volumes: collections.abc.Iterable[Volume], target: ProvisioningTarget) -> Volume | None:
    return next((volume for volume in volumes if target.matches(volume)), None)


def plan_shrink(system: SystemVolume, target: ProvisioningTarget) -> ShrinkPlan | None:
    """Return None when the unallocated slack already fits the target, otherwise a validated shrink plan."""
    if system.unallocated >= target.size:
        return None

    amount = target.size + target.margin
    new_size = system.size - amount
    if new_size <= system.size_min:
        raise InsufficientShrinkSpace(
            "Insufficient shrinkable space on {}: shrinking {} by {} leaves {}, supported minimum is {}".format(
                system.letter or "system volume",
                humanize(system.size),
                humanize(amount),
                humanize(max(new_size, 0)),
                humanize(system.size_min),
            )
        )

    return ShrinkPlan(amount=amount, new_size=new_size)


def allocate_letter(
    used: collections.abc.Iterable[str | None],
    candidates: collections.abc.Sequence[str] = ELIGIBLE_LETTERS,
) -> str:
    taken = {letter.upper() for letter in used if letter}

    letter = next((candidate for candidate in candidates if candidate not in taken), None)
    if letter is None:
        raise NoAvailableIdentifier(
            "No available drive letter in {}-{}: all are in use".format(candidates[0], candidates[-1])
        )

    return letter


class Inspector(typing.Protocol):
    def disk(self) -> Disk: ...

    def volumes(self) -> tuple[Volume, ...]: ...

    def system_volume(self) -> SystemVolume: ...


class Builder(typing.Protocol):
    def shrink(self, system: SystemVolume, plan: ShrinkPlan) -> None: ...

    def settle(self) -> None: ...

    def create(self, disk: Disk, size: int, letter: str) -> Volume: ...

    def format(self, partition: Volume, target: ProvisioningTarget) -> Volume: ...


def provision(inspector: Inspector, builder: Builder, target: ProvisioningTarget) -> Outcome:
    """
    Run the whole pipeline once and return exactly one outcome.

    Disk state is read once up front and once more after a shrink. Every ProvisioningError is converted into a failed
    outcome here, so callers never have to guard against a half-finished run aborting the surrounding workflow.
    """
    try:
        disk = inspector.disk()
        if not is_eligible(disk, target):
            return Outcome(
                OutcomeKind.SKIPPED_TOO_SMALL,
                "Disk {} is {}, below the {} required for a data partition".format(
                    disk.number,
                    humanize(disk.size),
                    humanize(target.min_disk_size),
                ),
            )

        #
        # Only volumes on the provisioned disk count as existing data partitions. Letters are taken across all volumes.
        #
        volumes = inspector.volumes()
        on_disk = (volume for volume in volumes if volume.disk_number == disk.number)
        if (existing := find_existing(on_disk, target)) is not None:
            return Outcome(
                OutcomeKind.SKIPPED_ALREADY_EXISTS,
                "Volume '{}' ({}) already matches {} +/- {}".format(
                    existing.label,
                    humanize(existing.size),
                    humanize(target.size),
                    humanize(target.tolerance),
                ),
                letter=existing.letter,
                size=existing.size,
            )

        system = inspector.system_volume()
        if system.disk_number != disk.number:
            raise UnsupportedLayout(
                "System volume lives on disk {}, refusing to provision disk {}".format(system.disk_number, disk.number)
            )

        if (plan := plan_shrink(system, target)) is not None:
            builder.shrink(system, plan)
            #
            # Fixed wait, then trust a fresh read. There is no polling for convergence.
            #
            builder.settle()
            volumes = inspector.volumes()

        letter = allocate_letter(volume.letter for volume in volumes)
        partition = builder.create(disk, target.size, letter)
        volume = builder.format(partition, target)

    except ProvisioningError as error:
        return Outcome(OutcomeKind.FAILED, error.message, error=error.kind)

    return Outcome(
        OutcomeKind.CREATED,
        "Created {} volume '{}' of {} at {}:".format(
            target.filesystem,
            volume.label,
            humanize(volume.size),
            volume.letter,
        ),
        letter=volume.letter,
        size=volume.size,
    )


class ProvisioningEvent(typing.TypedDict):
    kind: str
    reason: str
    error: str | None
    drive_letter: str | None
    size: int | None
    size_human: str | None


def report(outcome: Outcome) -> ProvisioningEvent:
    return ProvisioningEvent(
        kind=str(outcome.kind),
        reason=outcome.reason,
        error=outcome.error,
        drive_letter=outcome.letter,
        size=outcome.size,
        size_human=humanize(outcome.size) if outcome.size is not None else None,
    )
