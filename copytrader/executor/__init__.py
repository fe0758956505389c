"""
Background executor: config, the poll/aggregate/execute loop and the process entrypoint.
"""
