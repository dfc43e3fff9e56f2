"""
Domain Value Objects

Value objects are immutable types that represent descriptive aspects of the domain.
They have no conceptual identity and are compared by their values, not by ID.

Examples:
- SessionState: Lifecycle state of a session plus its transition table
- ScheduleState: Active/paused/completed/orphaned, mapped onto schedule columns
- ProcessHandle: Instance name and observed status of an encoding process
"""
