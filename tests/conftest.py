from unittest.mock import MagicMock

import pytest

from mws_fulfillment import MWSCredentials


@pytest.fixture
def connection():
    return MWSCredentials('AKIAEXAMPLEKEY000000', 'secret-key', 'A1SELLER000000', 'ATVPDKIKX0DER',
                          {'User-Agent': 'tests'})


def fake_response(text, status_code=200):
    response = MagicMock()
    response.text = text
    response.status_code = status_code
    return response


SUBMIT_FEED_RESPONSE = """<?xml version="1.0"?>
<SubmitFeedResponse xmlns="http://mws.amazonaws.com/doc/2009-01-01/">
  <SubmitFeedResult>
    <FeedSubmissionInfo>
      <FeedSubmissionId>2291326430</FeedSubmissionId>
      <FeedType>{feed_type}</FeedType>
      <SubmittedDate>2013-06-03T17:58:25+00:00</SubmittedDate>
      <FeedProcessingStatus>_SUBMITTED_</FeedProcessingStatus>
    </FeedSubmissionInfo>
  </SubmitFeedResult>
  <ResponseMetadata><RequestId>75424a43-f1fb-4d6c-bb1b-a0ce8d3a5f3c</RequestId></ResponseMetadata>
</SubmitFeedResponse>
"""

FEED_SUBMISSION_LIST_RESPONSE = """<?xml version="1.0"?>
<GetFeedSubmissionListResponse xmlns="http://mws.amazonaws.com/doc/2009-01-01/">
  <GetFeedSubmissionListResult>
    <HasNext>false</HasNext>
    <FeedSubmissionInfo>
      <FeedSubmissionId>2291326430</FeedSubmissionId>
      <FeedType>_POST_ORDER_ACKNOWLEDGEMENT_DATA_</FeedType>
      <SubmittedDate>2013-06-03T17:58:25+00:00</SubmittedDate>
      <FeedProcessingStatus>{status}</FeedProcessingStatus>
    </FeedSubmissionInfo>
  </GetFeedSubmissionListResult>
  <ResponseMetadata><RequestId>1105b931-6f1c-4480-8e97-f3b467840a9e</RequestId></ResponseMetadata>
</GetFeedSubmissionListResponse>
"""

PROCESSING_REPORT = """<?xml version="1.0" encoding="UTF-8"?>
<AmazonEnvelope xmlns:xsi="http://www.w3.org/2001/XMLSchema-instance" xsi:noNamespaceSchemaLocation="amzn-envelope.xsd">
  <Header>
    <DocumentVersion>1.02</DocumentVersion>
    <MerchantIdentifier>A1SELLER000000</MerchantIdentifier>
  </Header>
  <MessageType>ProcessingReport</MessageType>
  <Message>
    <MessageID>1</MessageID>
    <ProcessingReport>
      <DocumentTransactionID>2291326430</DocumentTransactionID>
      <StatusCode>Complete</StatusCode>
      <ProcessingSummary>
        <MessagesProcessed>1</MessagesProcessed>
        <MessagesSuccessful>{successful}</MessagesSuccessful>
        <MessagesWithError>{errors}</MessagesWithError>
        <MessagesWithWarning>0</MessagesWithWarning>
      </ProcessingSummary>{results}
    </ProcessingReport>
  </Message>
</AmazonEnvelope>
"""

ERROR_RESULT = """
      <Result>
        <MessageID>1</MessageID>
        <ResultCode>Error</ResultCode>
        <ResultMessageCode>25</ResultMessageCode>
        <ResultDescription>We are unable to process the XML feed because one or more items are invalid.</ResultDescription>
      </Result>"""


def processing_report(errors=0, results=''):
    return PROCESSING_REPORT.format(successful=1 - errors, errors=errors, results=results)
