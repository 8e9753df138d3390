import typing

from ansible.module_utils.common.arg_spec import ArgumentSpecValidator
from ansible.errors import AnsibleActionFail

#
# Similar to the built-in ActionBase.validate_argument_spec functionality, but for task variables. Only the keys known
#  to the spec are validated, as task-level vars usually carry unrelated entries (loop variables, host overrides).
#
# See also: https://docs.ansible.com/ansible/latest/dev_guide/developing_program_flow_modules.html#argument-spec
#
def validate_spec(spec: dict, obj: typing.Mapping[str, typing.Any] | None) -> dict[str, typing.Any]:
    subset = {key: value for key, value in (obj or {}).items() if key in spec}

    result = ArgumentSpecValidator(spec).validate(subset)
    if len(result.errors.errors):
        raise AnsibleActionFail("Invalid task variables: {}".format(result.error_messages))

    subset.update(result.validated_parameters)

    return subset
