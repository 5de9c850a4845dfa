"""
store — Entity persistence behind the ``EntityStore`` protocol.

Sub-modules:
    memory_store  — Protocol definition + in-process implementation
"""
