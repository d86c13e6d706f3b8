"""
Services Layer
PaperTrade Platform

Business logic of the signal execution pipeline:

Market Data:
    - PriceCache: Latest price snapshot per instrument
    - PriceFeed / SimulatedPriceFeed: Tick ingestion
    - PriceBroadcaster / RealTimeHub: Push prices to WebSocket clients

Signal Pipeline:
    - StrategyEngine: Validates, deduplicates and routes webhook signals
    - RiskManager: Pre-trade admission control
    - SignalCache: Idempotency window for repeated deliveries

Support:
    - AuditTrail: Append-only record of every outcome
    - ErrorHandler: Operator alerting for unexpected failures
"""
