"""Pipeline components.

This package contains the payload parser, the stage processors, the
vulnerability correlation (engines and local pattern matcher) and the
in-memory library lifecycle tracker.
"""
