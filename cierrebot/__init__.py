"""Settlement bot: conversational closing wizard backed by a tabular ledger."""
