"""End-to-end tests: detection driving Twitch predictions through fakes."""
