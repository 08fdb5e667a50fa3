"""
Panel workflow: states, records, queues, state machine, validation and the
orchestrator facade.
"""
