# claim() results
CLAIMED = "claimed"      # first delivery: run the effects
RESUMED = "resumed"      # seen before but never completed: run them again
DUPLICATE = "duplicate"  # completed before: acknowledge, do nothing
