# Copyright 2016 Andy Chu. All rights reserved.
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#   http://www.apache.org/licenses/LICENSE-2.0
"""
os_path.py - The few path operations the library needs.

We don't use os.path here because argv[0] rules are about the literal '/'
in the application string, not about normalized paths.
"""

sep = '/'


def join(s1, s2):
    # type: (str, str) -> str
    """Join pathnames.

    Ignore the previous parts if a part is absolute.  Insert a '/' unless the
    first part is empty or already ends in '/'.
    """
    if s2.startswith('/') or len(s1) == 0:
        # absolute path
        return s2

    if s1.endswith('/'):
        return s1 + s2

    return '%s/%s' % (s1, s2)


def basename(p):
    # type: (str) -> str
    """Returns the final component of a pathname"""
    i = p.rfind(sep) + 1
    return p[i:]


def has_sep(p):
    # type: (str) -> bool
    """Is this a path, rather than a name to look up in $PATH?"""
    return sep in p


def argv0(application):
    # type: (str) -> str
    """The argv[0] a child sees for an application string.

    /usr/bin/cat -> cat, but cat -> cat and ./cat -> cat.
    """
    if has_sep(application):
        return basename(application)
    return application
