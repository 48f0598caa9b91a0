"""Pass components: cursor store, batch outbox, aggregator, executor, driver, trigger.

build_driver() in reconciliation_driver wires them from Settings.
"""
