# Services layer for the shipping label workflow
