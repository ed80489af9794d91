# domainscope/scanner/__init__.py
"""
Scan pipeline.

Usage:
    from domainscope.scanner.orchestrator import ScanOrchestrator

    report = ScanOrchestrator().scan("example.com")

Architecture:
    Orchestrator
    ├── Probes (collect facts, never judge them)
    │   ├── DnsProbe          - A/AAAA/MX/TXT/NS/CNAME/SOA/CAA/SRV, SPF, DMARC
    │   ├── WhoisProbe        - registration data over TCP/43
    │   ├── BlacklistProbe    - DNSBL membership of the site's IPs
    │   ├── TlsProbe          - certificate and handshake details
    │   ├── HeadersProbe      - security headers, HTTPS redirect, cookies
    │   ├── TechnologyProbe   - signature matching over DNS, headers, HTML
    │   └── ContentProbe      - SEO, structured data, contacts, business model
    │
    └── Analyzers (judge facts, never collect them)
        ├── Scorer                - rule table -> category scores -> grade
        └── RecommendationEngine  - unmet rules -> prioritized actions

This package imports nothing at load time so the config module can depend on
scanner.models without a cycle.
"""
