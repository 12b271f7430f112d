"""Discord bridge for the ServiceNow Virtual Agent."""
