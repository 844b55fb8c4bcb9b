# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/


class ConfigurationError(Exception):
    pass


class CheckError(Exception):
    """Check could not tell whether the change is applied."""


class ApplyError(Exception):
    pass
