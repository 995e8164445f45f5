"""
Upgrade manager - supervises a daemon binary and swaps it on request.

Runs the daemon, passes its output through untouched, watches that output
for an `UPGRADE "<name>" NEEDED at height <n>: <info>` line and switches the
`current` symlink to the named upgrade binary when one appears.
"""

__version__ = "0.1.0"
__author__ = "Philip Orange <git@philiporange.com>"
