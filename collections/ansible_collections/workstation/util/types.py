import typing


#
# Raw action result in the form of a dictionary with typing support. Note the use of False instead of None for the
#  status flags, which is required for proper Ansible loop support.
#
class RawResult(typing.TypedDict, total=False):
    skipped: bool
    changed: bool
    failed: bool
    msg: str


#
# Alias to TaskVars for shorter function signatures.
#
TaskVars: typing.TypeAlias = typing.Mapping[str, typing.Any]
