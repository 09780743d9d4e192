"""nodeflow - node-graph workflow execution engine.

Walks a user-authored graph of typed nodes (condition, loop, parallel,
api_call, database_query, data_transform, filter, delay) and returns the final
variable context plus a step-by-step execution trace.
"""

__version__ = "0.1.0"
