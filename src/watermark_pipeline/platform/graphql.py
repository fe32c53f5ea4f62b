"""GraphQL documents for the commerce platform admin API."""

PRODUCTS_PAGE_SIZE = 50
PRODUCT_MEDIA_LIMIT = 50
PRODUCT_VARIANT_LIMIT = 100

LIST_PRODUCTS = """
query listProducts($cursor: String) {
  products(first: %d, after: $cursor, query: "status:active") {
    edges { node { id } }
    pageInfo { hasNextPage endCursor }
  }
}
""" % PRODUCTS_PAGE_SIZE

LIST_COLLECTION_PRODUCTS = """
query listCollectionProducts($collectionId: ID!, $cursor: String) {
  collection(id: $collectionId) {
    id
    products(first: %d, after: $cursor) {
      edges { node { id } }
      pageInfo { hasNextPage endCursor }
    }
  }
}
""" % PRODUCTS_PAGE_SIZE

GET_PRODUCT = """
query getProduct($id: ID!) {
  product(id: $id) {
    id
    title
    featuredMedia { id }
    media(first: %d) {
      edges {
        node {
          id
          alt
          mediaContentType
          status
          ... on MediaImage { image { url } }
        }
      }
    }
    variants(first: %d) {
      edges {
        node {
          id
          media(first: 10) { edges { node { id } } }
        }
      }
    }
  }
}
""" % (PRODUCT_MEDIA_LIMIT, PRODUCT_VARIANT_LIMIT)

STAGED_UPLOADS_CREATE = """
mutation stagedUploadsCreate($input: [StagedUploadInput!]!) {
  stagedUploadsCreate(input: $input) {
    stagedTargets {
      url
      resourceUrl
      parameters { name value }
    }
    userErrors { field message }
  }
}
"""

PRODUCT_CREATE_MEDIA = """
mutation productCreateMedia($productId: ID!, $media: [CreateMediaInput!]!) {
  productCreateMedia(productId: $productId, media: $media) {
    media {
      id
      alt
      mediaContentType
      status
      ... on MediaImage { image { url } }
    }
    mediaUserErrors { field message code }
  }
}
"""

PRODUCT_DELETE_MEDIA = """
mutation productDeleteMedia($productId: ID!, $mediaIds: [ID!]!) {
  productDeleteMedia(productId: $productId, mediaIds: $mediaIds) {
    deletedMediaIds
    mediaUserErrors { field message code }
  }
}
"""

PRODUCT_REORDER_MEDIA = """
mutation productReorderMedia($id: ID!, $moves: [MoveInput!]!) {
  productReorderMedia(id: $id, moves: $moves) {
    job { id done }
    mediaUserErrors { field message code }
  }
}
"""

PRODUCT_VARIANTS_BULK_UPDATE = """
mutation productVariantsBulkUpdate($productId: ID!, $variants: [ProductVariantsBulkInput!]!) {
  productVariantsBulkUpdate(productId: $productId, variants: $variants) {
    productVariants { id }
    userErrors { field message }
  }
}
"""

FILE_CREATE = """
mutation fileCreate($files: [FileCreateInput!]!) {
  fileCreate(files: $files) {
    files { id fileStatus }
    userErrors { field message }
  }
}
"""

FILE_UPDATE = """
mutation fileUpdate($files: [FileUpdateInput!]!) {
  fileUpdate(files: $files) {
    files { id fileStatus }
    userErrors { field message }
  }
}
"""

GET_FILE_REFERENCE = """
query getFileReference($id: ID!) {
  node(id: $id) {
    id
    ... on File { fileStatus }
  }
}
"""

GET_MEDIA_STATUS = """
query getMediaStatus($id: ID!) {
  node(id: $id) {
    id
    ... on Media { status }
  }
}
"""

GET_FILE_STATUS = """
query getFileStatus($id: ID!) {
  node(id: $id) {
    id
    ... on File { fileStatus }
  }
}
"""
