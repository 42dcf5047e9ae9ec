"""Reply Flow: messaging channel lifecycle and automated replies."""
