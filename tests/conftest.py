"""
Shared fixtures for the BMSEX test suite
"""

from decimal import Decimal

import pytest

from bmsex.config.bmsex_config import BMSEXConfig
from bmsex.connectors.registry import VendorRegistry
from bmsex.connectors.static import CatalogEntry, StaticCatalogConfig, StaticCatalogConnector
from bmsex.db.repository import InMemoryRecordStore
from bmsex.models.estimate import SourceType
from bmsex.processors.bms.pipeline import EstimatePipeline
from bmsex.services.vin_service import VINDecoder

VALID_VIN = '1HGCM82633A004352'
BAD_CHECKSUM_VIN = '1HGCM82633A123456'

SIMPLE_ESTIMATE = f"""<?xml version="1.0" encoding="UTF-8"?>
<Estimate>
  <EstimateInfo>
    <EstimateID>EST-1001</EstimateID>
    <EstimateDate>2024-03-01</EstimateDate>
  </EstimateInfo>
  <Customer>
    <FirstName>Jane</FirstName>
    <LastName>Doe</LastName>
    <Phone>555-123-4567</Phone>
    <Email>Jane.Doe@Example.com</Email>
  </Customer>
  <Vehicle>
    <VIN>{VALID_VIN}</VIN>
    <Year>2003</Year>
    <Make>Honda</Make>
    <Model>Accord</Model>
  </Vehicle>
  <Insurance>
    <Company>Acme Insurance</Company>
    <ClaimNumber>CLM-1001</ClaimNumber>
  </Insurance>
  <LineItems>
    <LineItem>
      <LineNumber>1</LineNumber>
      <Type>part</Type>
      <Description>Front Bumper Cover</Description>
      <PartNumber>04711-SDA-A00</PartNumber>
      <Quantity>1</Quantity>
      <UnitPrice>250.00</UnitPrice>
    </LineItem>
    <LineItem>
      <LineNumber>2</LineNumber>
      <Type>labor</Type>
      <Description>R&amp;I front bumper</Description>
      <LaborHours>1.5</LaborHours>
    </LineItem>
  </LineItems>
  <Totals>
    <PartsTotal>250.00</PartsTotal>
    <LaborTotal>90.00</LaborTotal>
    <GrandTotal>340.00</GrandTotal>
  </Totals>
</Estimate>
"""

CIECA_ESTIMATE = f"""<?xml version="1.0" encoding="UTF-8"?>
<VehicleDamageEstimateAddRq xmlns="http://www.cieca.com/BMS">
  <RqUID>3f1e2d4c-0000-4000-8000-000000000001</RqUID>
  <RefClaimNum>CLM-2002</RefClaimNum>
  <DocumentInfo>
    <BMSVer>5.2.0</BMSVer>
    <DocumentID>DOC-2002</DocumentID>
    <VendorCode>CCC</VendorCode>
    <CreateDateTime>2024-03-02T10:15:00</CreateDateTime>
    <CurrencyInfo><CurCode>CAD</CurCode></CurrencyInfo>
  </DocumentInfo>
  <AdminInfo>
    <InsuranceCompany>
      <Party><OrgInfo><CompanyName>Northern Mutual</CompanyName></OrgInfo></Party>
    </InsuranceCompany>
    <Owner>
      <Party>
        <PersonInfo>
          <PersonName><FirstName>Sam</FirstName><LastName>Lee</LastName></PersonName>
        </PersonInfo>
        <ContactInfo>
          <Communications><CommQualifier>HP</CommQualifier><CommPhone>416-555-0100</CommPhone></Communications>
          <Communications><CommQualifier>EM</CommQualifier><CommEmail>SAM.LEE@EXAMPLE.COM</CommEmail></Communications>
        </ContactInfo>
      </Party>
    </Owner>
  </AdminInfo>
  <VehicleInfo>
    <VINInfo><VIN><VINNum>{VALID_VIN}</VINNum></VIN></VINInfo>
    <VehicleDesc>
      <ModelYear>2003</ModelYear>
      <MakeDesc>Honda</MakeDesc>
      <ModelName>Accord</ModelName>
    </VehicleDesc>
  </VehicleInfo>
  <DamageLineInfo>
    <LineNum>1</LineNum>
    <LineDesc>Front Bumper Cover</LineDesc>
    <PartInfo>
      <PartNum>04711-SDA-A00</PartNum>
      <PartPrice>412.50</PartPrice>
      <Quantity>1</Quantity>
      <PartType>PAN</PartType>
    </PartInfo>
    <LaborInfo><LaborType>LAB</LaborType><LaborHours>1.2</LaborHours></LaborInfo>
  </DamageLineInfo>
  <DamageLineInfo>
    <LineNum>2</LineNum>
    <LineDesc>Headlamp Assembly LH</LineDesc>
    <PartInfo>
      <PartNum>33150-SDA-A01</PartNum>
      <PartPrice>$1,210.00</PartPrice>
      <Quantity>1</Quantity>
      <PartType>PAA</PartType>
    </PartInfo>
  </DamageLineInfo>
  <DamageLineInfo>
    <LineNum>3</LineNum>
    <LineDesc>Refinish front bumper</LineDesc>
    <LaborInfo><LaborType>LAR</LaborType><LaborHours>2.5</LaborHours></LaborInfo>
  </DamageLineInfo>
  <RepairTotalsInfo>
    <PartsTotalsInfo><TotalAmt>1622.50</TotalAmt></PartsTotalsInfo>
    <LaborTotalsInfo><TotalAmt>310.00</TotalAmt></LaborTotalsInfo>
    <SummaryTotalsInfo>
      <TotalType>TOT</TotalType>
      <TotalSubType>TT</TotalSubType>
      <TotalAmt>2100.00</TotalAmt>
    </SummaryTotalsInfo>
  </RepairTotalsInfo>
</VehicleDamageEstimateAddRq>
"""

MALFORMED_ESTIMATE = """<?xml version="1.0"?>
<Estimate>
  <EstimateInfo><EstimateID>EST-BROKEN</EstimateID>
  <Vehicle><VIN>1HGCM82633A004352</VIN></Vehicle>
</Estimate
"""


def simple_estimate(
    vin: str = VALID_VIN,
    claim_number: str = 'CLM-1001',
    estimate_id: str = 'EST-1001',
    description: str = 'Front Bumper Cover',
    unit_price: str = '250.00',
) -> bytes:
    """The simple estimate with selected fields replaced"""
    xml = SIMPLE_ESTIMATE
    xml = xml.replace(f"<VIN>{VALID_VIN}</VIN>", f"<VIN>{vin}</VIN>" if vin else "")
    xml = xml.replace("<ClaimNumber>CLM-1001</ClaimNumber>", f"<ClaimNumber>{claim_number}</ClaimNumber>" if claim_number else "")
    xml = xml.replace("<EstimateID>EST-1001</EstimateID>", f"<EstimateID>{estimate_id}</EstimateID>")
    xml = xml.replace("<Description>Front Bumper Cover</Description>", f"<Description>{description}</Description>")
    xml = xml.replace("<UnitPrice>250.00</UnitPrice>", f"<UnitPrice>{unit_price}</UnitPrice>")
    xml = xml.replace("<PartsTotal>250.00</PartsTotal>", f"<PartsTotal>{unit_price}</PartsTotal>")
    return xml.encode('utf-8')


def static_vendor(
    vendor_id: str,
    price: str,
    lead_time_days: int = 3,
    reliability: float = 0.5,
    latency: float = 0.0,
    failure_message: str = None,
    part_type: SourceType = None,
    preferred: bool = False,
) -> StaticCatalogConnector:
    """A vendor quoting every part at one price"""
    return StaticCatalogConnector(StaticCatalogConfig(
        vendor_id=vendor_id,
        name=f"Vendor {vendor_id}",
        reliability_score=reliability,
        preferred=preferred,
        catalog={'*': CatalogEntry(price=Decimal(price), lead_time_days=lead_time_days, part_type=part_type)},
        latency_seconds=latency,
        failure_message=failure_message,
    ))


@pytest.fixture(autouse=True)
def bmsex_config():
    """Fresh configuration per test with remote VIN decoding switched off"""
    BMSEXConfig.reset()
    config = BMSEXConfig()
    config.set('vin.remote_enabled', False)
    config.set('database.sqlite.path', ':memory:')
    yield config
    BMSEXConfig.reset()


@pytest.fixture
def simple_xml() -> bytes:
    return SIMPLE_ESTIMATE.encode('utf-8')


@pytest.fixture
def cieca_xml() -> bytes:
    return CIECA_ESTIMATE.encode('utf-8')


@pytest.fixture
def malformed_xml() -> bytes:
    return MALFORMED_ESTIMATE.encode('utf-8')


@pytest.fixture
def missing_vin_xml() -> bytes:
    return simple_estimate(vin='')


@pytest.fixture
def vendors() -> VendorRegistry:
    return VendorRegistry([
        static_vendor('vendor-a', '300.00', lead_time_days=2),
        static_vendor('vendor-c', '280.00', lead_time_days=5),
    ])


@pytest.fixture
def offline_decoder(bmsex_config) -> VINDecoder:
    return VINDecoder(config=bmsex_config, remote_enabled=False, current_year=2024)


@pytest.fixture
def store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def pipeline(bmsex_config, vendors, offline_decoder, store) -> EstimatePipeline:
    return EstimatePipeline(
        vin_decoder=offline_decoder,
        vendors=vendors,
        store=store,
        bmsex_config=bmsex_config,
    )
