"""
Layered configuration for the forwarder, built on top of ConfigObj. The packaged defaults are
overlaid with an optional os-specific file, the user's ~/sockfwd.cfg and an explicit file, and
the result is validated against a schema that also converts the values to their types.
"""
