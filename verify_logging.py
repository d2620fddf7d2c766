import logging
from projection_helpers import DEFAULTS
from projection_simulation import ProjectionSimulator, normalize_inputs

# Configure logging at the root level to capture simulator output
logging.basicConfig(level=logging.INFO)

# Run a short projection with debug logging switched on via the settings dict
settings = DEFAULTS.copy()
settings["enable_debug_logging"] = True
settings["current_age"] = 60
settings["retire_age"] = 62
settings["life_expectancy"] = 67  # Just a few years for verification

print("Running projection with logging enabled...")
result = ProjectionSimulator(normalize_inputs(settings)).run()
print(f"\nProjection complete. {len(result.pre_ledger)} + {len(result.post_ledger)} years, "
      f"required contribution {result.required_monthly_contribution:,.2f}/month.")
