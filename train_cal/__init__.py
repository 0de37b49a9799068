"""NYC Train Cal: MTA service alert calendars per subway line."""
