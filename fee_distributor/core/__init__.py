"""Pass arithmetic and state: fee accrual, flooring, batching, pass transitions.

Nothing here touches the database, the network or the event loop; services/
feeds it rows and acts on what it returns.
"""
