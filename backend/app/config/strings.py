# /app/config/strings.py

# This file contains the default user-facing strings the simulator posts when
# a flow step does not configure its own text. Keeping them here makes them
# easy to manage and update without changing engine logic.

# Input validation
VALIDATION_ERROR = "Invalid input. Please try again."
INVALID_SELECTION = "Please choose one of the options below."
RETRIES_EXHAUSTED = "Too many invalid attempts. This conversation has ended."

# API steps
API_FALLBACK_MESSAGE = "Sorry, we couldn't fetch that information right now."

# Transfer steps
TRANSFER_NOTICE = "Conversation transferred to a human agent."
TRANSFER_NOTICE_TEAM = "Conversation transferred to team {team_id}."

# Run errors
ROUTE_NOT_FOUND = "Step '{target}' does not exist in this flow."
NO_BUTTONS = "Step '{step_name}' has no buttons to continue from."
