# State = everything required to resume, continue, or audit a conversation run.

# For a conversation it holds:

# Iteration count against the per-run ceiling

# The append-only history of user input, reasoning, actions and responses

# The last reasoning and action results, plus per-tool execution records

# Flags such as a pending user interaction

# The completion status and the error that ended a run, if any
