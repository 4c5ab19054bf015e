"""Session orchestration around an external CLI coding agent.

One run is a series of iterations: each invokes the agent with the task
document and progress log, records the outcome in ``.ralph/session.json``
and checkpoints it, so an interrupted run can resume strictly after the
last completed iteration. Spend is tracked per iteration and per session
against configured ceilings.
"""
