"""Instance lifecycle: settings, process launching, administration, state machine."""
