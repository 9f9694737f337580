# Context assembly for one reasoning step

# +---------------------+
# |      Memory         |   short-term per conversation (bounded, ranked)
# |---------------------|   long-term behind a KeyValueStore
# | Tool results        |
# | Editor selections   |
# | Final answers       |
# +---------------------+

# +---------------------+
# |      State          |   ConversationState, see context/state
# |---------------------|
# | Iteration count     |
# | History (append)    |
# | Pending interaction |
# +---------------------+

#    \    /
#     \  /
#      \/
# +------------------------------+
# |           Context            |   built per iteration
# |------------------------------|
# | History window (last N)      |
# | Memory summary               |
# | Capability descriptions      |
# +------------------------------+
#         |
#         v
#   [ReasoningService -> ToolRegistry]
