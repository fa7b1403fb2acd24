# tests/test_source_clients.py
from unittest.mock import MagicMock, patch

import pytest
import requests

from clients import crossref_client, doaj_client, pubmed_client
from clients.http_utils import SourceError, get_with_retry


EFETCH_XML = b"""<?xml version="1.0"?>
<PubmedArticleSet>
  <PubmedArticle>
    <MedlineCitation>
      <PMID>0012345</PMID>
      <Article>
        <Journal>
          <JournalIssue><PubDate><Year>2021</Year></PubDate></JournalIssue>
          <Title>The Lancet</Title>
        </Journal>
        <ArticleTitle>Aspirin <i>and</i> stroke</ArticleTitle>
        <Abstract>
          <AbstractText Label="BACKGROUND">Stroke is common.</AbstractText>
          <AbstractText Label="RESULTS">Risk fell (p &lt; 0.01).</AbstractText>
        </Abstract>
        <AuthorList>
          <Author><LastName>Smith</LastName><Initials>JA</Initials></Author>
          <Author><LastName>Doe</LastName><Initials>B</Initials></Author>
        </AuthorList>
        <PublicationTypeList>
          <PublicationType>Journal Article</PublicationType>
          <PublicationType>Randomized Controlled Trial</PublicationType>
        </PublicationTypeList>
      </Article>
    </MedlineCitation>
    <PubmedData>
      <ArticleIdList>
        <ArticleId IdType="pubmed">12345</ArticleId>
        <ArticleId IdType="doi">10.1016/S0140-6736(21)00001-X</ArticleId>
      </ArticleIdList>
    </PubmedData>
  </PubmedArticle>
  <PubmedArticle>
    <MedlineCitation>
      <PMID>999</PMID>
      <Article>
        <Journal><JournalIssue><PubDate><MedlineDate>1998 Jan-Feb</MedlineDate></PubDate></JournalIssue></Journal>
        <ArticleTitle>Older paper</ArticleTitle>
      </Article>
    </MedlineCitation>
  </PubmedArticle>
</PubmedArticleSet>
"""

ELINK_XML = b"""<?xml version="1.0"?>
<eLinkResult>
  <LinkSet>
    <DbFrom>pubmed</DbFrom>
    <IdList><Id>1</Id></IdList>
    <LinkSetDb>
      <DbTo>pubmed</DbTo>
      <Link><Id>10</Id></Link>
      <Link><Id>1</Id></Link>
      <Link><Id>10</Id></Link>
      <Link><Id>11</Id></Link>
    </LinkSetDb>
  </LinkSet>
  <LinkSet>
    <IdList><Id>2</Id></IdList>
  </LinkSet>
</eLinkResult>
"""


def _response(status_code=200, json_data=None, content=b"", headers=None):
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = json_data or {}
    resp.content = content
    resp.text = content.decode() if content else ""
    resp.headers = headers or {}
    return resp


def test_parse_efetch_xml():
    records = pubmed_client.parse_efetch_xml(EFETCH_XML)
    assert len(records) == 2

    first = records[0]
    assert first["pmid"] == "12345"
    assert first["doi"] == "10.1016/s0140-6736(21)00001-x"
    assert first["title"] == "Aspirin and stroke"
    assert first["abstract"] == "Stroke is common. Risk fell (p < 0.01)."
    assert first["authors"] == "Smith JA, Doe B"
    assert first["journal"] == "The Lancet"
    assert first["year"] == 2021
    assert first["pubmed_publication_types"] == ["Journal Article", "Randomized Controlled Trial"]
    assert first["publication_types"] == []

    second = records[1]
    assert second["year"] == 1998
    assert second["doi"] is None
    assert second["abstract"] is None


def test_malformed_efetch_raises_source_error():
    with pytest.raises(SourceError):
        pubmed_client.parse_efetch_xml(b"<PubmedArticleSet><oops>")


def test_parse_elink_drops_self_and_duplicates():
    links = pubmed_client._parse_elink(ELINK_XML)
    assert links == {"1": ["10", "11"], "2": []}


def test_get_links_merges_both_directions():
    refs = _response(content=ELINK_XML)
    cited = _response(content=b"<eLinkResult><LinkSet><IdList><Id>2</Id></IdList>"
                              b"<LinkSetDb><Link><Id>7</Id></Link></LinkSetDb></LinkSet></eLinkResult>")
    with patch("clients.pubmed_client.get_with_retry", side_effect=[refs, cited]) as get, \
            patch("clients.pubmed_client.time.sleep"):
        links = pubmed_client.get_links(["1", "2", "3"])

    assert links == {
        "1": {"references": ["10", "11"], "cited_by": []},
        "2": {"references": [], "cited_by": ["7"]},
        "3": {"references": [], "cited_by": []},
    }
    first_params = get.call_args_list[0].kwargs["params"]
    assert ("linkname", "pubmed_pubmed_refs") in first_params
    assert [v for k, v in first_params if k == "id"] == ["1", "2", "3"]


def test_build_term_with_filters():
    term = pubmed_client.build_term(
        "aspirin", ["Review", "Meta-Analysis"], free_full_text=True, humans=True, language="english"
    )
    assert term == (
        '(aspirin) AND free full text[sb] AND humans[mh] AND english[la] '
        'AND ("Review"[pt] OR "Meta-Analysis"[pt])'
    )


def test_search_pubmed_pages_through_history():
    esearch = _response(json_data={"esearchresult": {"count": "3", "webenv": "W", "querykey": "1"}})
    efetch = _response(content=EFETCH_XML)
    with patch("clients.pubmed_client.get_with_retry", side_effect=[esearch, efetch]) as get, \
            patch("clients.pubmed_client.time.sleep"):
        total, items = pubmed_client.search_pubmed("aspirin", 10, year_from=2015)

    assert total == 3
    assert [i["pmid"] for i in items] == ["12345", "999"]
    esearch_params = get.call_args_list[0].kwargs["params"]
    assert esearch_params["mindate"] == "2015"
    assert esearch_params["usehistory"] == "y"
    assert get.call_args_list[1].kwargs["params"]["retmax"] == 3


def test_search_pubmed_without_history_is_an_error():
    with patch("clients.pubmed_client.get_with_retry", return_value=_response(json_data={"esearchresult": {}})):
        with pytest.raises(SourceError):
            pubmed_client.search_pubmed("aspirin", 10)


def test_europe_pmc_count_missing_record():
    with patch("clients.pubmed_client.get_with_retry", return_value=None):
        assert pubmed_client.europe_pmc_citation_count("1") == 0
    with patch("clients.pubmed_client.get_with_retry", return_value=_response(json_data={"hitCount": 12})):
        assert pubmed_client.europe_pmc_citation_count("1") == 12


def test_doaj_result_parsing():
    record = doaj_client._parse_result({
        "id": "abc",
        "bibjson": {
            "title": "Open <b>access</b> trial",
            "abstract": "<p>Results</p>",
            "year": "2020",
            "author": [{"name": "Jane Roe"}],
            "identifier": [{"type": "DOI", "id": "https://doi.org/10.5/OA"}],
            "journal": {"title": "PLOS"},
        },
    })
    assert record["doi"] == "10.5/oa"
    assert record["title"] == "Open access trial"
    assert record["abstract"] == "Results"
    assert record["authors"] == "Jane Roe"
    assert record["year"] == 2020
    assert record["url"] == "https://doi.org/10.5/oa"


def test_doaj_paging_keeps_page_size_fixed():
    def _page(url, source, params=None, headers=None):
        start = (params["page"] - 1) * params["pageSize"]
        results = [
            {"id": str(i), "bibjson": {"title": f"T{i}", "identifier": [{"type": "doi", "id": f"10.9/{i}"}]}}
            for i in range(start, min(start + params["pageSize"], 1000))
        ]
        return _response(json_data={"total": 1000, "results": results})

    with patch("clients.doaj_client.get_with_retry", side_effect=_page) as get, \
            patch("clients.doaj_client.time.sleep"):
        total, items = doaj_client.search_doaj("aspirin", 150)

    assert total == 1000
    assert [c.kwargs["params"] for c in get.call_args_list] == [
        {"page": 1, "pageSize": 100},
        {"page": 2, "pageSize": 100},
    ]
    assert [i["doi"] for i in items] == [f"10.9/{i}" for i in range(150)]


def test_crossref_work_to_record():
    record = crossref_client.work_to_record({
        "DOI": "10.1002/ABC",
        "title": ["A Wiley paper"],
        "author": [{"family": "Lee", "given": "Ann"}],
        "container-title": ["Wiley Journal"],
        "issued": {"date-parts": [[2018, 5]]},
    }, "wiley")
    assert record["doi"] == "10.1002/abc"
    assert record["authors"] == "Lee A"
    assert record["year"] == 2018
    assert record["url"] == "https://doi.org/10.1002/abc"


def test_crossref_enrichment_extraction():
    data = crossref_client.extract_enrichment({
        "publisher": "Elsevier",
        "is-referenced-by-count": 4,
        "ISSN": ["1234-5678", "8765-4321"],
        "abstract": "<jats:p>Background &amp; aims</jats:p>",
        "license": [{"URL": "https://creativecommons.org/licenses/by/4.0/"}],
    })
    assert data["issn"] == "1234-5678"
    assert data["citedByCount"] == 4
    assert data["abstract"] == "Background & aims"
    assert data["license"].startswith("https://creativecommons.org")
    assert "volume" not in data


def test_get_with_retry_retries_then_succeeds():
    ok = _response(200)
    busy = _response(429, headers={"Retry-After": "1"})
    with patch("clients.http_utils.requests.get", side_effect=[busy, requests.exceptions.ConnectionError("reset"), ok]) as get, \
            patch("clients.http_utils.time.sleep") as sleep:
        assert get_with_retry("https://example.org", "test") is ok

    assert get.call_count == 3
    assert sleep.call_count == 2


def test_get_with_retry_gives_up():
    with patch("clients.http_utils.requests.get", return_value=_response(503)), \
            patch("clients.http_utils.time.sleep"):
        with pytest.raises(SourceError) as exc:
            get_with_retry("https://example.org", "test", max_retries=2)
    assert exc.value.source == "test"


def test_get_with_retry_404_handling():
    with patch("clients.http_utils.requests.get", return_value=_response(404)):
        assert get_with_retry("https://example.org", "test", allow_404=True) is None
        with pytest.raises(SourceError) as exc:
            get_with_retry("https://example.org", "test")
    assert exc.value.status_code == 404
