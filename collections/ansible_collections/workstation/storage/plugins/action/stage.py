#
# workstation.storage.stage - copy a staging tree onto the provisioned data drive.
#
# Follow the project README for more information.
#
import typing

import ntpath

from ansible.plugins.action import ActionBase
from ansible.errors import AnsibleActionFail
from ansible.constants import COLOR_CHANGED, COLOR_OK, COLOR_SKIP

from ansible_collections.workstation.util.types import RawResult, TaskVars
from ansible_collections.workstation.storage.plugins.module_utils.provisioning import FACT_NAME


ARGS_SPEC = {
    "src": dict(type="str", required=True),
    "dest": dict(type="str", default=""),
    "drive": dict(type="str", required=False),
}


class Arguments(typing.TypedDict):
    src: str
    dest: str
    drive: str | None


class ActionModule(ActionBase):
    #
    # Robocopy exit codes are a bit mask: 1 - files copied, 2 - extra files, 4 - mismatches. Anything from 8 onwards
    #  means at least one copy failed.
    #
    ROBOCOPY_COPIED = 1
    ROBOCOPY_FAILURE = 8

    ROBOCOPY_FLAGS = ("/E", "/R:1", "/W:1", "/NP", "/NJH", "/NJS")

    def run(self, tmp: None = None, task_vars: TaskVars = None) -> RawResult:
        args: Arguments = self.validate_argument_spec(ARGS_SPEC)[1]

        drive = self._resolve_drive(args["drive"], task_vars or {})
        if drive is None:
            self._display.display("skipped: (stage) => 'no provisioned data drive'", COLOR_SKIP)
            return RawResult(skipped=True, msg="No provisioned data drive, staging skipped")

        destination = ntpath.join(f"{drive}:\\", args["dest"].strip("\\/"))
        argv = ["robocopy", args["src"], destination, *self.ROBOCOPY_FLAGS]
        if self._task.check_mode:
            self._display.display("would stage: ({}) => '{}'".format(args["src"], destination), COLOR_OK)
            return RawResult(changed=True, dest=destination)

        result = self._execute_module(
            module_name="ansible.windows.win_command",
            module_args=dict(argv=argv),
            task_vars=task_vars,
        )

        #
        # win_command flags every non-zero exit code as a failure, which is wrong for robocopy.
        #
        rc = result.get("rc")
        if rc is None:
            raise AnsibleActionFail("Failed to run robocopy: {}".format(result.get("msg") or result))

        changed = bool(rc & self.ROBOCOPY_COPIED)
        if rc >= self.ROBOCOPY_FAILURE:
            return RawResult(
                failed=True,
                rc=rc,
                dest=destination,
                msg="robocopy failed with exit code {}: {}".format(rc, (result.get("stdout") or "").strip()),
            )

        self._display.display(
            "{}: ({}) => '{}'".format("changed" if changed else "ok", args["src"], destination),
            COLOR_CHANGED if changed else COLOR_OK,
        )
        return RawResult(changed=changed, rc=rc, dest=destination)

    def _resolve_drive(self, explicit: str | None, task_vars: TaskVars) -> str | None:
        value = explicit or self._templar.template(task_vars.get(FACT_NAME))
        if not value:
            return None

        letter = str(value).strip().rstrip(":\\").upper()
        if len(letter) != 1 or not letter.isalpha():
            raise AnsibleActionFail("Drive '{}' must be a single letter".format(value))

        return letter
