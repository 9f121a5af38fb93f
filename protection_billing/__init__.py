"""Order sync and weekly commission billing for the shipping protection add-on."""
